"""Exception hierarchy shared by every stake-o-matic component.

Components raise; only the orchestrator decides the process exit status.
"""


class StakeOMaticError(RuntimeError):
    """Base class for fatal run conditions."""


class ConfigurationError(StakeOMaticError):
    """Raised when configuration is invalid."""


class RPCError(StakeOMaticError):
    """Raised when the Solana RPC returns an error response."""


class HistoryUnavailableError(StakeOMaticError):
    """Raised when the ledger no longer holds the epoch being evaluated."""


class SourceStakeStateError(StakeOMaticError):
    """Raised when the source stake account is not an initialized stake account."""


class BalanceMismatchError(StakeOMaticError):
    """Raised when an existing stake account holds an unexpected balance."""


class InsufficientFundsError(StakeOMaticError):
    """Raised when a funding account cannot cover what the run needs."""


class BatchFailedError(StakeOMaticError):
    """Raised when a gating batch finished with failed transactions."""
