"""Log Context Management.

Thread-safe logging context using contextvars for binding the tenant,
the stream worker ID and arbitrary extras to log entries.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any


_tenant_var: ContextVar[str] = ContextVar("tenant", default="")
_worker_id_var: ContextVar[str] = ContextVar("worker_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    tenant = _tenant_var.get()
    if tenant:
        ctx["tenant"] = tenant
    worker_id = _worker_id_var.get()
    if worker_id:
        ctx["worker_id"] = worker_id
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class LogContext:
    """Context manager binding tenant and worker fields to log entries.

    Restores the previous values on exit so contexts can nest, e.g. a
    worker-level context around per-message tenant contexts.

    Example:
        with LogContext(worker_id="worker-1a2b"):
            with LogContext(tenant="acme"):
                logger.info("computing features")  # includes worker_id, tenant
    """

    tenant: str = ""
    worker_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    _tokens: list = field(default_factory=list, repr=False)

    def __enter__(self) -> "LogContext":
        self._tokens = [
            (_tenant_var, _tenant_var.set(self.tenant or _tenant_var.get())),
            (_worker_id_var, _worker_id_var.set(self.worker_id or _worker_id_var.get())),
            (_extra_context_var, _extra_context_var.set({**_extra_context_var.get(), **self.extra})),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
