"""Pytest configuration and fixtures."""

from typing import AsyncGenerator

import numpy as np
import pytest
from httpx import ASGITransport, AsyncClient

from volume_api.api.dependencies import get_predictor
from volume_api.core.config import Settings, get_settings
from volume_api.main import app
from volume_api.models.scan import MaskPrompt, PromptKind
from volume_api.services.reconstruction import (
    CameraIntrinsics,
    DepthCapture,
    ReconstructionService,
    get_reconstruction_service,
)
from volume_api.services.segmentation import ImageEmbedding, MaskPredictionError
from volume_api.services.session import SessionStore, get_session_store

# Step scene: 200x200 px floor at 1.0 m with a 60x60 px block whose top is at 0.8 m.
# fx = fy = 16 px and z_ref = 0.8 m give a pixel pitch of 0.05 m, so the floor
# spans 10 x 10 units and the block is 3 x 3 x 0.2 units.
SCENE_SIZE = 200
BLOCK_START = 70
BLOCK_END = 130  # exclusive
FLOOR_DEPTH = 1.0
BLOCK_DEPTH = 0.8


class FakePredictor:
    """In-process stand-in for the mask predictor service."""

    def __init__(
        self, failing: set[str] | None = None, failing_images: set[tuple[int, int]] | None = None
    ) -> None:
        self.failing = failing or set()
        # (height, width) of images whose embedding request fails
        self.failing_images = failing_images or set()
        self.embedded: list[ImageEmbedding] = []
        self.predictions: list[tuple[str, MaskPrompt, tuple[int, int]]] = []

    async def embed_image(self, image: np.ndarray) -> ImageEmbedding:
        height, width = image.shape[:2]
        if (height, width) in self.failing_images:
            raise MaskPredictionError("Embedding request failed", {"size": [width, height]})
        embedding = ImageEmbedding(f"emb-{len(self.embedded)}", width, height)
        self.embedded.append(embedding)
        return embedding

    async def predict(
        self, embedding: ImageEmbedding, prompt: MaskPrompt, output_shape: tuple[int, int]
    ) -> np.ndarray:
        self.predictions.append((embedding.embedding_id, prompt, output_shape))
        if embedding.embedding_id in self.failing:
            raise MaskPredictionError("No candidates", {"embedding_id": embedding.embedding_id})
        return render_prompt(prompt, output_shape)


def render_prompt(prompt: MaskPrompt, shape: tuple[int, int]) -> np.ndarray:
    """Box prompts select the box; foreground points select a 7x7 square."""
    height, width = shape
    mask = np.zeros(shape, dtype=bool)
    if prompt.kind == PromptKind.BOX:
        x1, y1, x2, y2 = prompt.box
        mask[int(round(y1 * height)):int(round(y2 * height)), int(round(x1 * width)):int(round(x2 * width))] = True
        return mask
    for (x, y), label in zip(prompt.points, prompt.labels):
        if label == 1:
            px, py = int(x * width), int(y * height)
            mask[max(py - 3, 0):py + 4, max(px - 3, 0):px + 4] = True
    return mask


def block_box() -> MaskPrompt:
    scale = float(SCENE_SIZE)
    return MaskPrompt(
        kind=PromptKind.BOX,
        box=(BLOCK_START / scale, BLOCK_START / scale, BLOCK_END / scale, BLOCK_END / scale),
    )


def step_depth_map() -> np.ndarray:
    depth = np.full((SCENE_SIZE, SCENE_SIZE), FLOOR_DEPTH)
    depth[BLOCK_START:BLOCK_END, BLOCK_START:BLOCK_END] = BLOCK_DEPTH
    return depth


def step_intrinsics() -> CameraIntrinsics:
    return CameraIntrinsics(
        fx=16.0,
        fy=16.0,
        cx=SCENE_SIZE / 2,
        cy=SCENE_SIZE / 2,
        reference_width=SCENE_SIZE,
        reference_height=SCENE_SIZE,
        depth_width=SCENE_SIZE,
        depth_height=SCENE_SIZE,
    )


def step_point_list() -> str:
    lines = [
        "# Camera Intrinsics: fx=16.0, fy=16.0, cx=100.0, cy=100.0",
        f"# Reference Dimensions: width={SCENE_SIZE}, height={SCENE_SIZE}",
        "x,y,depth_meters",
    ]
    depth = step_depth_map()
    for y in range(SCENE_SIZE):
        for x in range(SCENE_SIZE):
            lines.append(f"{x},{y},{depth[y, x]}")
    return "\n".join(lines) + "\n"


@pytest.fixture
def step_capture() -> DepthCapture:
    """Depth capture of the step scene."""
    return DepthCapture.from_depth_map(step_depth_map(), step_intrinsics())


@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for the small step scene."""
    return Settings(target_point_density=0.25, primary_mask_expansion_px=2, fill_workers=2)


@pytest.fixture
def block_mask() -> np.ndarray:
    """Exact footprint of the block at depth-map resolution."""
    mask = np.zeros((SCENE_SIZE, SCENE_SIZE), dtype=bool)
    mask[BLOCK_START:BLOCK_END, BLOCK_START:BLOCK_END] = True
    return mask


@pytest.fixture
def block_prompt() -> MaskPrompt:
    return block_box()


@pytest.fixture
def point_list_text() -> str:
    return step_point_list()


@pytest.fixture
def predictor_factory():
    """Build fake predictors; ``failing`` embedding ids raise on predict, ``failing_images`` shapes on embed."""
    return FakePredictor


@pytest.fixture
def fake_predictor() -> FakePredictor:
    return FakePredictor()


@pytest.fixture
async def client(
    test_settings: Settings, fake_predictor: FakePredictor
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create async test client backed by a fresh session store and a fake predictor.

    Usage:
        async def test_endpoint(client: AsyncClient):
            response = await client.get("/health")
            assert response.status_code == 200
    """
    store = SessionStore(max_sessions=4)
    service = ReconstructionService(test_settings)
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_predictor] = lambda: fake_predictor
    app.dependency_overrides[get_session_store] = lambda: store
    app.dependency_overrides[get_reconstruction_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
