"""FastAPI dependency injection factories."""

from typing import Annotated

from fastapi import Depends

from volume_api.core.config import Settings, get_settings
from volume_api.services.reconstruction import ReconstructionService, get_reconstruction_service
from volume_api.services.segmentation import MaskPredictor, get_predictor_client
from volume_api.services.session import SessionStore, get_session_store


def get_predictor() -> MaskPredictor:
    """
    Get the mask predictor.

    Returns:
        Predictor client configured from settings
    """
    return get_predictor_client()


# Type aliases for cleaner route signatures
SettingsDep = Annotated[Settings, Depends(get_settings)]
PredictorDep = Annotated[MaskPredictor, Depends(get_predictor)]
SessionStoreDep = Annotated[SessionStore, Depends(get_session_store)]
ReconstructionServiceDep = Annotated[ReconstructionService, Depends(get_reconstruction_service)]
