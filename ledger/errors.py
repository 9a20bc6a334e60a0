# ledger/errors.py
class LedgerError(Exception):
    """Base ledger error."""
    def __init__(self, msg: str = "", **ctx):
        super().__init__(msg)
        self.msg = msg
        self.ctx = ctx

    def __str__(self):
        base = self.msg or self.__class__.__name__
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base


class OracleUnavailable(LedgerError):
    """Oracle timed out, was unreachable or answered with an error; retry later."""


class UnknownStatusCode(LedgerError):
    """Oracle returned a status code outside the known lifecycle."""
    def __init__(self, msg: str = "", code=None, **ctx):
        super().__init__(msg, code=code, **ctx)
        self.code = code


class StatusRegression(LedgerError):
    """Authoritative status would move the cached status backwards."""


class InvariantViolation(LedgerError):
    """Write would break an order invariant (e.g. missing party once funded)."""


class WriteConflict(LedgerError):
    """Optimistic version check failed; another writer got there first."""


class SubscriberDeliveryFailure(LedgerError):
    """Delivering an event to one subscriber failed; the subscriber is dropped."""


class PermissionDenied(LedgerError):
    """Viewer is not allowed to see or act on the requested orders."""


class OrderNotFound(LedgerError):
    """No order with the given id."""


class ActionNotAllowed(LedgerError):
    """Gated action is not valid for the verified status or caller."""
