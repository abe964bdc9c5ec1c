"""
Loading of external candidate entities used by the match search.
"""
from fastapi import APIRouter, File, Request, UploadFile

from tollsync.api.dependencies import to_http_exception
from tollsync.api.schemas.shared import CandidateUploadResponse
from tollsync.domain.matching.candidates import FrameCandidateProvider

router = APIRouter(prefix="/candidates", tags=["candidates"])


@router.post("", response_model=CandidateUploadResponse)
async def upload_candidates(request: Request, file: UploadFile = File(...)):
    """
    Replace the loaded candidates with a fleet-system CSV export.

    Columns: entity_id, entity_type, occurred_at, and optionally
    vehicle_id, card_id, amount.
    """
    try:
        provider = FrameCandidateProvider.from_csv(await file.read())
        request.app.state.candidate_provider = provider
        return CandidateUploadResponse(loaded=len(provider))
    except Exception as e:
        raise to_http_exception(e)
