"""shotweave - continuity-aware shot generation for AI video sessions.

Call validate_dependencies() during application startup to fail fast when
the imaging stack the quality gate relies on is missing.
"""

import logging

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies() -> None:
    """Validate required imaging libraries are importable.

    Raises:
        RuntimeError: If OpenCV or Pillow cannot be imported.
    """
    try:
        import cv2
        import PIL

        logger.info(f"imaging stack validated: opencv {cv2.__version__}, Pillow {PIL.__version__}")
    except ImportError as e:
        raise RuntimeError(
            f"Imaging dependency missing: {e}. Install with:\n"
            "  pip install opencv-python-headless Pillow"
        ) from e
