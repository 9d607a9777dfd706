"""Face identity scoring using InsightFace ArcFace embeddings.

Compares the most prominent face in a generated frame against a character
reference image.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)


class FaceMatchingService:
    """ArcFace face embeddings with lazy model loading."""

    def __init__(self, model_name: str = "buffalo_l"):
        """Initialize service. Model is loaded on first use."""
        self.model_name = model_name
        self._app = None

    def _load_model(self):
        """Lazy-load InsightFace model on first use.

        Raises:
            RuntimeError: If model initialization fails
        """
        if self._app is not None:
            return

        try:
            from insightface.app import FaceAnalysis

            logger.info(f"Loading InsightFace {self.model_name} model...")
            self._app = FaceAnalysis(
                name=self.model_name,
                providers=["CUDAExecutionProvider", "CPUExecutionProvider"],
            )
            self._app.prepare(ctx_id=0, det_size=(640, 640))
            logger.info("InsightFace model loaded successfully")
        except Exception as e:
            logger.error(f"Failed to load InsightFace model: {e}")
            raise RuntimeError(
                f"Failed to load InsightFace model: {e}. Install the vision extra "
                "(insightface + onnxruntime); the model (~200MB) is downloaded on first use."
            ) from e

    def embed_face(self, image: np.ndarray) -> np.ndarray:
        """Normalized ArcFace embedding of the largest face in an RGB image.

        Raises:
            ValueError: If no face is detected
        """
        import cv2

        self._load_model()

        faces = self._app.get(cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
        if not faces:
            raise ValueError("No face detected in image")

        face = max(
            faces,
            key=lambda f: (f.bbox[2] - f.bbox[0]) * (f.bbox[3] - f.bbox[1]),
        )
        embedding = face.embedding
        return embedding / np.linalg.norm(embedding)

    def identity_similarity(self, generated: np.ndarray, reference: np.ndarray) -> float:
        return self.cosine_similarity(self.embed_face(generated), self.embed_face(reference))

    @staticmethod
    def cosine_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """Compute cosine similarity between two embeddings.

        Args:
            emb1: First embedding (should be normalized)
            emb2: Second embedding (should be normalized)

        Returns:
            Cosine similarity (-1 to 1)
        """
        return float(np.dot(emb1, emb2) / (np.linalg.norm(emb1) * np.linalg.norm(emb2)))
