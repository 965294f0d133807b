from .trial_ledger import TrialLedgerRecord  # noqa: F401
from .behavior_event import BehaviorEventRecord  # noqa: F401
from .prompt_candidate import PromptCandidateRecord, PromptInteractionRecord  # noqa: F401
from .login_analytics import LoginAnalyticsEvent  # noqa: F401
