from .budget import BudgetConfig, BudgetKind, BudgetTracker
from .controllers import (
    AssertController,
    RetryController,
    StepOutcome,
    SuggestController,
    controller_for,
)
from .core import (
    CallRecord,
    Example,
    Invocation,
    Policy,
    Program,
    ProgramBuilder,
    ProgramStats,
    Stats,
    Step,
    Trace,
    invoke,
    stats,
    trace,
)
from .errors import (
    AssertExhausted,
    BudgetExceeded,
    CallFailure,
    ProgramDefinitionError,
    ProgramError,
    RetriesExhausted,
    SuggestExhausted,
    TerminalFailure,
)
from .eval import (
    CompositeScorer,
    ContainsMatch,
    ExactMatch,
    FunctionScorer,
    NumericDistance,
    PredicateScorer,
    RegexMatch,
    ScoreResult,
    Scorer,
)
from .llm import (
    LITELLM_AVAILABLE,
    FunctionProvider,
    LiteLLMProvider,
    LLMResponse,
    Provider,
    TokenUsage,
)
from .observability import (
    ObservationRecord,
    OTLPExporter,
    StepStats,
    TraceSummary,
    observations,
    summarize,
)
from .prompt import (
    ExampleBootstrapGenerator,
    FieldSearchLog,
    FlagToggleGenerator,
    HelpfulPhraseGenerator,
    OptimizationResult,
    ParaphraseGenerator,
    TreeSearchOptimizer,
    optimize,
)
from .rate_limit import AdaptiveRateLimiter
from .search import SearchNode, TreeSearch
from .template import ExampleTriple, PromptTemplate, compile_template, render

__all__ = [
    # Core
    "ProgramBuilder",
    "Program",
    "Step",
    "Policy",
    "Invocation",
    "invoke",
    "trace",
    "stats",
    "Example",
    # Trace / Stats
    "CallRecord",
    "Trace",
    "Stats",
    "ProgramStats",
    # Controllers
    "RetryController",
    "SuggestController",
    "AssertController",
    "StepOutcome",
    "controller_for",
    # Budget
    "BudgetConfig",
    "BudgetKind",
    "BudgetTracker",
    # Errors
    "ProgramError",
    "ProgramDefinitionError",
    "CallFailure",
    "TerminalFailure",
    "RetriesExhausted",
    "AssertExhausted",
    "BudgetExceeded",
    "SuggestExhausted",
    # Templates
    "PromptTemplate",
    "ExampleTriple",
    "compile_template",
    "render",
    # Optimizers
    "TreeSearchOptimizer",
    "OptimizationResult",
    "FieldSearchLog",
    "ParaphraseGenerator",
    "HelpfulPhraseGenerator",
    "ExampleBootstrapGenerator",
    "FlagToggleGenerator",
    "TreeSearch",
    "SearchNode",
    "optimize",
    # Rate Limiting
    "AdaptiveRateLimiter",
    # LLM
    "Provider",
    "FunctionProvider",
    "LiteLLMProvider",
    "LLMResponse",
    "TokenUsage",
    "LITELLM_AVAILABLE",
    # Observability
    "ObservationRecord",
    "StepStats",
    "TraceSummary",
    "OTLPExporter",
    "observations",
    "summarize",
    # Evaluation
    "ScoreResult",
    "Scorer",
    "ExactMatch",
    "ContainsMatch",
    "NumericDistance",
    "RegexMatch",
    "PredicateScorer",
    "FunctionScorer",
    "CompositeScorer",
]
