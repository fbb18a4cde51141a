"""HTTP client for the prompt-driven mask predictor service."""

import base64
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import cv2
import httpx
import numpy as np

from volume_api.core.config import get_settings
from volume_api.models.scan import MaskPrompt
from volume_api.services.reconstruction.models import ErrorKind, ReconstructionError

logger = logging.getLogger(__name__)


class MaskPredictionError(ReconstructionError):
    """The predictor returned no usable mask for a prompt."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrorKind.PREDICTOR_FAILURE, message, details)


@dataclass(frozen=True)
class ImageEmbedding:
    """Handle to an image embedding held by the predictor service."""

    embedding_id: str
    width: int
    height: int


class MaskPredictor(Protocol):
    """Anything that can embed an image once and answer prompts against it."""

    async def embed_image(self, image: np.ndarray) -> ImageEmbedding: ...

    async def predict(
        self, embedding: ImageEmbedding, prompt: MaskPrompt, output_shape: tuple[int, int]
    ) -> np.ndarray: ...


def select_best_candidate(candidates: list[dict]) -> dict:
    """Highest-score candidate of a prediction response."""
    if not candidates:
        raise MaskPredictionError("Predictor returned no mask candidates")
    return max(candidates, key=lambda c: c.get("score", 0.0))


def decode_logits(candidate: dict) -> np.ndarray:
    """Decode a candidate's little-endian float32 logit raster."""
    raw = base64.b64decode(candidate["logits_base64"])
    return np.frombuffer(raw, dtype="<f4").reshape(candidate["height"], candidate["width"])


class MaskPredictorClient:
    """Client for communicating with the mask predictor service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        logit_threshold: float = 2.197,
    ) -> None:
        """
        Initialize the predictor client.

        Args:
            base_url: Base URL of the predictor service (e.g., "http://localhost:8001")
            timeout: Request timeout in seconds
            logit_threshold: Logit above which a pixel belongs to the mask
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logit_threshold = logit_threshold
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> dict:
        """
        Check the health of the predictor service.

        Raises:
            httpx.HTTPError: If the request fails
        """
        client = await self._get_client()
        response = await client.get("/health")
        response.raise_for_status()
        return response.json()

    async def is_healthy(self) -> bool:
        """True if the service is up and its model is loaded."""
        try:
            health = await self.health_check()
            return health.get("status") == "ok" and health.get("model_loaded", False)
        except Exception as e:
            logger.warning(f"Predictor health check failed: {e}")
            return False

    async def embed_image(self, image: np.ndarray) -> ImageEmbedding:
        """
        Compute an image embedding once so every later prompt can reuse it.

        Args:
            image: (H, W, 3) RGB or (H, W) grayscale uint8 image

        Returns:
            ImageEmbedding handle

        Raises:
            MaskPredictionError: If the service rejects the image
        """
        height, width = image.shape[:2]
        bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR) if image.ndim == 3 else image
        success, buffer = cv2.imencode(".png", bgr)
        if not success:
            raise MaskPredictionError("Failed to encode image for embedding")

        request_body = {"image_base64": base64.b64encode(buffer.tobytes()).decode("utf-8")}
        logger.debug(f"Requesting embedding for {width}x{height} image")

        try:
            client = await self._get_client()
            response = await client.post("/embeddings", json=request_body)
            response.raise_for_status()
            data = response.json()
            embedding = ImageEmbedding(
                embedding_id=data["embedding_id"],
                width=int(data.get("width", width)),
                height=int(data.get("height", height)),
            )
        except httpx.HTTPError as e:
            raise MaskPredictionError("Embedding request failed", {"error": str(e)}) from e
        except (KeyError, TypeError, ValueError) as e:
            raise MaskPredictionError("Invalid embedding response", {"error": str(e)}) from e

        logger.info(f"Embedded {width}x{height} image as {embedding.embedding_id}")
        return embedding

    async def predict(
        self,
        embedding: ImageEmbedding,
        prompt: MaskPrompt,
        output_shape: tuple[int, int],
    ) -> np.ndarray:
        """
        Predict a binary mask for a prompt.

        Args:
            embedding: Embedding of the image the prompt refers to
            prompt: Normalized prompt
            output_shape: (height, width) of the returned mask

        Returns:
            Boolean mask of ``output_shape``

        Raises:
            MaskPredictionError: If no usable candidate comes back
        """
        out_height, out_width = output_shape
        request_body = {
            "embedding_id": embedding.embedding_id,
            "prompt": prompt.to_pixels(embedding.width, embedding.height),
            "output_width": out_width,
            "output_height": out_height,
        }

        try:
            client = await self._get_client()
            response = await client.post("/predict", json=request_body)
            response.raise_for_status()
            data = response.json()
            best = select_best_candidate(data.get("candidates", []))
            logits = decode_logits(best)
        except httpx.HTTPError as e:
            raise MaskPredictionError(
                "Prediction request failed",
                {"error": str(e), "embedding_id": embedding.embedding_id},
            ) from e
        except (KeyError, TypeError, ValueError) as e:
            raise MaskPredictionError("Invalid prediction response", {"error": str(e)}) from e

        if logits.shape != (out_height, out_width):
            logits = cv2.resize(logits, (out_width, out_height), interpolation=cv2.INTER_LINEAR)

        mask = logits > self.logit_threshold
        logger.debug(
            f"Prediction on {embedding.embedding_id}: score={best.get('score', 0.0):.3f}, "
            f"{int(mask.sum())} pixels"
        )
        return mask


@lru_cache
def get_predictor_client() -> MaskPredictorClient:
    """
    Get a cached predictor client instance.

    Returns:
        MaskPredictorClient configured from settings
    """
    settings = get_settings()
    return MaskPredictorClient(
        base_url=settings.predictor_service_url,
        timeout=settings.predictor_timeout,
        logit_threshold=settings.mask_logit_threshold,
    )
