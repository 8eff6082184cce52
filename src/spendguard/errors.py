"""
Spendguard error types.

Every policy decision that rejects an operation raises one of these, so
callers can tell an authorization problem (never retry) from stale data
(retry after the next oracle update) or a limit breach (shrink the request).
"""


class SpendGuardError(Exception):
    """Base error for all Spendguard operations."""
    pass


class ConfigError(SpendGuardError):
    """Configuration value is missing or malformed."""
    pass


class ModulePaused(SpendGuardError):
    """The global pause switch is set; no operation may proceed."""

    def __init__(self):
        super().__init__("Module is paused")


# Authorization errors
class AuthorizationError(SpendGuardError):
    """Base error for role and allowlist violations."""
    pass


class Unauthorized(AuthorizationError):
    """Account does not hold the role required for the operation."""

    def __init__(self, account: str, role: str):
        self.account = account
        self.role = role
        super().__init__(f"{account} lacks role {role}")


class AddressNotAllowed(AuthorizationError):
    """Call target is not allow-listed for the account."""

    def __init__(self, account: str, target: str):
        self.account = account
        self.target = target
        super().__init__(f"Target {target} is not allowed for {account}")


class SpenderNotAllowed(AuthorizationError):
    """Approval spender is not allow-listed for the account."""

    def __init__(self, account: str, spender: str):
        self.account = account
        self.spender = spender
        super().__init__(f"Spender {spender} is not allowed for {account}")


class NotLedgerWriter(AuthorizationError):
    """A ledger write was signed by someone other than the authorized updater."""

    def __init__(self, signer: str, expected: str):
        self.signer = signer
        self.expected = expected
        super().__init__(f"Ledger write signed by {signer}, expected {expected}")


class StaleUpdateNonce(AuthorizationError):
    """A signed ledger update was replayed or submitted out of order."""

    def __init__(self, nonce: int, expected: int):
        self.nonce = nonce
        self.expected = expected
        super().__init__(f"Update nonce {nonce} does not match ledger nonce {expected}")


# Staleness errors
class StalenessError(SpendGuardError):
    """Base error for data that is too old to make a spending decision."""
    pass


class StaleOracleData(StalenessError):
    """The account's spending state has not been refreshed recently enough."""

    def __init__(self, account: str, age_seconds: int, max_age_seconds: int):
        self.account = account
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(
            f"Oracle data for {account} is {age_seconds}s old (max {max_age_seconds}s)"
        )


class StalePortfolioValue(StalenessError):
    """The vault value snapshot is missing or too old."""

    def __init__(self, age_seconds: int, max_age_seconds: int):
        self.age_seconds = age_seconds
        self.max_age_seconds = max_age_seconds
        super().__init__(f"Vault value is {age_seconds}s old (max {max_age_seconds}s)")


class StalePriceFeed(StalenessError):
    """A price feed round is invalid, incomplete or too old."""

    def __init__(self, token: str, reason: str):
        self.token = token
        self.reason = reason
        super().__init__(f"Stale price feed for {token}: {reason}")


# Limit errors
class LimitError(SpendGuardError):
    """Base error for budget limit violations."""

    def __init__(self, message: str, requested: int, maximum: int):
        self.requested = requested
        self.maximum = maximum
        super().__init__(message)


class ExceedsSpendingLimit(LimitError):
    """Spending cost is above the account's remaining allowance."""

    def __init__(self, requested: int, maximum: int):
        super().__init__(
            f"Spending cost {requested} exceeds allowance {maximum}", requested, maximum
        )


class ApprovalExceedsLimit(LimitError):
    """Approval beyond the acquired balance is above the remaining allowance."""

    def __init__(self, requested: int, maximum: int):
        super().__init__(
            f"Approval cost {requested} exceeds allowance {maximum}", requested, maximum
        )


class ExceedsAbsoluteMaxSpending(LimitError):
    """Allowance write is above the vault-wide absolute cap."""

    def __init__(self, requested: int, maximum: int):
        super().__init__(
            f"Allowance {requested} exceeds absolute maximum {maximum}", requested, maximum
        )


# Integrity errors
class IntegrityError(SpendGuardError):
    """Base error for misconfiguration or spoofed inputs."""
    pass


class UnknownSelector(IntegrityError):
    """Calldata selector is not registered with an operation type."""

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"Unknown selector {selector}")


class NoParserRegistered(IntegrityError):
    """No calldata parser is registered for the call target."""

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"No parser registered for {target}")


class TokenMismatch(IntegrityError):
    """Parsed input token differs from the caller's claim."""

    def __init__(self, claimed: str, parsed: str):
        self.claimed = claimed
        self.parsed = parsed
        super().__init__(f"Token mismatch: claimed {claimed}, calldata says {parsed}")


class AmountMismatch(IntegrityError):
    """Parsed input amount differs from the caller's claim."""

    def __init__(self, claimed: int, parsed: int):
        self.claimed = claimed
        self.parsed = parsed
        super().__init__(f"Amount mismatch: claimed {claimed}, calldata says {parsed}")


class InvalidCalldata(IntegrityError):
    """Calldata is too short or cannot be decoded."""
    pass


class LedgerTampered(IntegrityError):
    """Ledger files changed outside of the ledger API."""
    pass


class ExecutionLogTampered(IntegrityError):
    """Execution log hash chain is broken."""
    pass


# Execution errors
class ExecutionError(SpendGuardError):
    """Base error for downstream call failures."""
    pass


class TransactionFailed(ExecutionError):
    """The vault's call to the target reverted or returned failure."""

    def __init__(self, target: str, reason: str = "call reverted"):
        self.target = target
        self.reason = reason
        super().__init__(f"Transaction to {target} failed: {reason}")


# Off-chain errors
class RpcError(SpendGuardError):
    """JSON-RPC request failed or returned an error object."""
    pass
