from .executors import accepts_kwarg, call_maybe_async, run_blocking

__all__ = ["accepts_kwarg", "call_maybe_async", "run_blocking"]
