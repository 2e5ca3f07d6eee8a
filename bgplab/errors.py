# errors.py


class BgpLabError(Exception):
    pass


class LoadError(BgpLabError):
    """Lab document is malformed or inconsistent. The load is rejected."""


class SessionFault(BgpLabError):
    """Simulated session failure. Caught by the session driver, never fatal."""

    def __init__(self, reason, detail=""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class InvariantViolation(BgpLabError):
    """Engine bug. Aborts the current tick."""
