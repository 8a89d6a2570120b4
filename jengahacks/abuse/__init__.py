"""Registration abuse control.

Provides:
- Identifier normalization (email, IP, client fingerprint)
- RateLimitEvaluator: fixed-window limits per dimension
- BlockRegistry: idempotent block/unblock
- ViolationLogger: best-effort, append-only violation records
- PatternDetector, AutoEscalation, ViolationAlerts and ViolationReports
  for the admin surface
"""

from .config import (
    AbuseConfig,
    AlertConfig,
    Dimension,
    DimensionPolicy,
    EscalationConfig,
    FailurePolicy,
    PatternConfig,
)
from .identifiers import (
    UNKNOWN_IP,
    Identifier,
    mask_identifier,
    normalize,
    require_identifier,
    resolve_client_ip,
    try_normalize,
)

__all__ = [
    "AbuseConfig",
    "AlertConfig",
    "Dimension",
    "DimensionPolicy",
    "EscalationConfig",
    "FailurePolicy",
    "Identifier",
    "PatternConfig",
    "UNKNOWN_IP",
    "mask_identifier",
    "normalize",
    "require_identifier",
    "resolve_client_ip",
    "try_normalize",
]
