"""CLIP visual similarity embedding service.

Scores how closely a generated frame follows a style reference. The model
(openai/clip-vit-base-patch32 by default, 512-dim vectors) is lazy-loaded on
first use so hosts without the vision extra can still import this module.
"""

import logging
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


class CLIPEmbeddingService:
    """CLIP image embeddings with lazy model loading."""

    def __init__(
        self,
        model_name: str = "openai/clip-vit-base-patch32",
        device: Optional[str] = None,
    ):
        """Initialize service.

        Args:
            model_name: HuggingFace model name to use for CLIP embeddings.
            device: Device for inference ("cuda", "cpu"). If None, auto-detects.
        """
        self.model_name = model_name
        self.device = device
        self._model = None
        self._processor = None

    def _load_model(self) -> None:
        """Lazy-load CLIPProcessor and CLIPModel on first use.

        Raises:
            RuntimeError: If model loading fails (missing extra, network error, corrupt weights)
        """
        if self._model is not None:
            return

        try:
            import torch
            from transformers import CLIPModel, CLIPProcessor

            if self.device is None:
                self.device = "cuda" if torch.cuda.is_available() else "cpu"

            logger.info(
                f"Loading CLIP model ({self.model_name}) on device={self.device}..."
            )
            self._processor = CLIPProcessor.from_pretrained(self.model_name)
            self._model = CLIPModel.from_pretrained(self.model_name)
            self._model = self._model.to(self.device)
            self._model.eval()
            logger.info("CLIP model loaded successfully")
        except Exception as e:
            logger.error(f"Failed to load CLIP model: {e}")
            raise RuntimeError(
                f"Failed to load CLIP model: {e}. Install the vision extra with: "
                "pip install 'shotweave[vision]'. On first run the weights (~600MB) "
                "are downloaded from HuggingFace."
            ) from e

    def embed_image(self, image: np.ndarray) -> np.ndarray:
        """Generate a normalized CLIP embedding for an RGB image array.

        Args:
            image: HxWx3 uint8 RGB array.

        Returns:
            Normalized float32 embedding (unit vector).
        """
        import torch
        from PIL import Image

        self._load_model()

        pil_image = Image.fromarray(image).convert("RGB")
        inputs = self._processor(images=pil_image, return_tensors="pt")

        if self.device and self.device != "cpu":
            inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            output = self._model.get_image_features(**inputs)

        # transformers 5.x returns BaseModelOutputWithPooling instead of tensor
        if isinstance(output, torch.Tensor):
            features = output
        else:
            features = output.pooler_output if hasattr(output, "pooler_output") else output[0]

        embedding = features.cpu().numpy()[0]
        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm

        return embedding.astype(np.float32)

    def image_similarity(self, first: np.ndarray, second: np.ndarray) -> float:
        """Cosine similarity of two RGB images, clamped to [0, 1]."""
        score = self.compute_similarity(self.embed_image(first), self.embed_image(second))
        return max(0.0, min(1.0, score))

    @staticmethod
    def compute_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """Cosine similarity between two unit-vector embeddings."""
        return float(np.dot(emb1, emb2))
