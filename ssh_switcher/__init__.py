"""SSH Switcher - keep one SSH key bound per Git identity."""

__version__ = "1.0.0"

from .engine import IdentityEngine
from .errors import SwitcherError
from .models import Conflict, ConflictType, DetectionResult, HealthVerdict, Identity, Severity, ValidationReport

__all__ = [
    "IdentityEngine",
    "SwitcherError",
    "Conflict",
    "ConflictType",
    "DetectionResult",
    "HealthVerdict",
    "Identity",
    "Severity",
    "ValidationReport",
]
