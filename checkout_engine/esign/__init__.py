"""
eSign gate and its verification surfaces.
"""

from checkout_engine.esign.gate import (
    EsignGate,
    EsignState,
    EsignOutcome,
    ConsentProvider,
    status_from_payload,
)
from checkout_engine.esign.surfaces import (
    ISigningSurface,
    RedirectSigningSurface,
    SurfaceHandle,
    SurfaceMode,
    preferred_mode,
)

__all__ = [
    # Gate
    "EsignGate",
    "EsignState",
    "EsignOutcome",
    "ConsentProvider",
    "status_from_payload",
    # Surfaces
    "ISigningSurface",
    "RedirectSigningSurface",
    "SurfaceHandle",
    "SurfaceMode",
    "preferred_mode",
]
