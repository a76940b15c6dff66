# Each kind maps to one HTTP status in app.main.


class Unauthenticated(Exception):
    # message is for logs only; clients always get the same body
    pass


class PermissionDenied(Exception):
    pass


class LedgerError(Exception):
    pass


class ValidationFailed(LedgerError):
    pass


class DependencyLookupFailed(LedgerError):
    pass


class TransactionFailed(LedgerError):
    retryable = True


class IdentityProviderError(Exception):
    pass
