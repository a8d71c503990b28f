"""Application-level exception types.

Convention:
- ``ValueError`` is for validation errors that are safe to forward to clients.
  The global ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- Asset store failures are classified in ``mediasync.store.base`` as transient
  (retry later) or permanent (give up on that item).
- Lookups of unknown records raise a ``LookupError`` subclass that routers map
  to 404.
"""

from __future__ import annotations


class OperationNotFoundError(LookupError):
    """Raised when a sync operation id does not exist."""
