from fastapi import APIRouter
from PIL import features

from schemas import HealthResponse

router = APIRouter()

VERSION = "0.1.0"

REQUIRED_CODECS = {
    "jpeg": "jpg",
    "webp": "webp",
    "png": "zlib",
}


def check_codecs() -> dict[str, bool]:
    """Check which Pillow encoders are compiled in."""
    results = {}
    for name, feature in REQUIRED_CODECS.items():
        results[name] = bool(features.check(feature))
    return results


@router.get("/health", response_model=HealthResponse)
async def health():
    codecs = check_codecs()
    all_available = all(codecs.values())
    return HealthResponse(
        status="ok" if all_available else "degraded",
        codecs=codecs,
        version=VERSION,
    )
