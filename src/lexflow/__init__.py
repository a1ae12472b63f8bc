"""
LexFlow - legal text capture queue.

Captures fragments of legal text, curates them into canonical markdown
documents and delivers them to a remote collection endpoint with error
classification and bounded retries.
"""

__version__ = "0.3.0"

# Re-export core models for convenience
from lexflow.core.config.models import LexflowConfig
from lexflow.core.queue.models import CaptureItem, CapturePayload, CaptureStatus

__all__ = ["CaptureItem", "CapturePayload", "CaptureStatus", "LexflowConfig", "__version__"]
