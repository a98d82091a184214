"""QueryGovernor - result caching, slow-query detection and index advice for SQL backends."""

__version__ = "0.1.0"
__license__ = "MIT"

# Exception hierarchy (import first so other modules can use it)
from querygovernor.exceptions import (
    AnalysisError,
    BackendError,
    BackendUnavailableError,
    CacheError,
    ConfigurationError,
    GovernorConnectionError,
    GovernorError,
    PoolExhaustedError,
    QueryTimeoutError,
)

# Public API exports
from querygovernor.advisor import IndexAdvisor, SuggestionLog
from querygovernor.cache import (
    MISS,
    CacheStore,
    InMemoryCacheStore,
    ResultCache,
    fingerprint,
)
from querygovernor.config import (
    Environment,
    GovernorConfig,
    get_config,
    load_config_from_env,
    load_config_from_file,
    reset_config,
)
from querygovernor.governor import QueryGovernor
from querygovernor.models import (
    ApplyStatus,
    DatabaseStats,
    ExecuteOptions,
    HealthReport,
    IndexApplyResult,
    IndexPriority,
    IndexSuggestion,
    PlanAnalysis,
    PoolSnapshot,
    ScanType,
    StatsSnapshot,
    SuggestionKind,
)
from querygovernor.plan import (
    PlanAnalyzer,
    PlanParser,
    PostgresTextPlanParser,
    get_plan_parser,
    register_plan_parser,
)
from querygovernor.recorder import (
    PerformanceRecorder,
    SignatureStats,
    get_query_type,
    normalize_signature,
)
from querygovernor.stats import StatsAggregator, percentile

__all__ = [
    # Version
    "__version__",
    # Exceptions
    "GovernorError",
    "QueryTimeoutError",
    "GovernorConnectionError",
    "PoolExhaustedError",
    "BackendUnavailableError",
    "BackendError",
    "AnalysisError",
    "CacheError",
    "ConfigurationError",
    # Facade
    "QueryGovernor",
    "ExecuteOptions",
    # Configuration
    "GovernorConfig",
    "Environment",
    "get_config",
    "load_config_from_env",
    "load_config_from_file",
    "reset_config",
    # Cache
    "ResultCache",
    "CacheStore",
    "InMemoryCacheStore",
    "MISS",
    "fingerprint",
    # Recording
    "PerformanceRecorder",
    "SignatureStats",
    "normalize_signature",
    "get_query_type",
    # Plans
    "PlanAnalyzer",
    "PlanParser",
    "PostgresTextPlanParser",
    "PlanAnalysis",
    "ScanType",
    "get_plan_parser",
    "register_plan_parser",
    # Advice
    "IndexAdvisor",
    "SuggestionLog",
    "IndexSuggestion",
    "SuggestionKind",
    "IndexPriority",
    "IndexApplyResult",
    "ApplyStatus",
    # Observability
    "StatsAggregator",
    "StatsSnapshot",
    "PoolSnapshot",
    "HealthReport",
    "DatabaseStats",
    "percentile",
]
