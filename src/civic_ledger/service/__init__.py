"""Service layer - configuration, side-effect dispatch and the HTTP app.

The FastAPI app lives in ``civic_ledger.service.app`` and is imported from
there; this package only re-exports the configuration.
"""

from .config import PipelineConfig

__all__ = ["PipelineConfig"]
