from __future__ import annotations


class MonitorError(Exception):
    pass


class AdapterError(MonitorError):
    """A stack controller call failed or timed out."""

    def __init__(self, message: str, *, stack_key: str | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.stack_key = stack_key
        self.timed_out = timed_out


class NotDeployedError(AdapterError):
    def __init__(self, stack_key: str) -> None:
        super().__init__(f"stack {stack_key!r} is not deployed", stack_key=stack_key)


class PersistenceError(MonitorError):
    pass


class DeliveryError(MonitorError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
