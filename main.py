# main.py
import json
import logging
from dataclasses import fields
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from cardmatch.services.config import load_config_file
from cardmatch.services.pipeline import CardIdentifier
from cardmatch.services.types import VariantCandidate

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
LOG = logging.getLogger("cardmatch.api")

app = FastAPI(title="cardmatch")

_IDENTIFIER: Optional[CardIdentifier] = None


def get_identifier() -> CardIdentifier:
    """Build the pipeline from config.yaml on first use."""
    global _IDENTIFIER
    if _IDENTIFIER is None:
        _IDENTIFIER = CardIdentifier.from_config(load_config_file())
    return _IDENTIFIER


def set_identifier(identifier: Optional[CardIdentifier]) -> None:
    global _IDENTIFIER
    _IDENTIFIER = identifier


@app.on_event("shutdown")
async def _close_identifier():
    if _IDENTIFIER is not None:
        await _IDENTIFIER.aclose()


async def _read_upload(upload: UploadFile) -> bytes:
    raw = await upload.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Empty file")
    return raw


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/identify")
async def identify(file: UploadFile = File(...)):
    """
    Identify the card in an uploaded photo.

    Returns ranked variant candidates plus a feedback string. When the card
    boundary could not be found, needs_manual_crop is true and the client
    can send corner points to /rectify.
    """
    raw = await _read_upload(file)
    result = await get_identifier().identify(raw, mime_type=file.content_type or "image/jpeg")
    return result.to_dict()


@app.post("/rectify")
async def rectify(
    file: UploadFile = File(...),
    points: str = Form(...),
    normalized: bool = Form(False),
    identify: bool = Form(False),
):
    """
    Manual crop. `points` is a JSON list of four [x, y] pairs in any order,
    in pixels or (normalized=true) fractions of the image size.

    Returns the rectified JPEG, or with identify=true the identification of
    the rectified card.
    """
    raw = await _read_upload(file)
    try:
        parsed = json.loads(points)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=422, detail=f"points is not valid JSON: {exc}")

    identifier = get_identifier()
    jpeg = identifier.rectify_image_bytes(raw, parsed, normalized=normalized)
    if jpeg is None:
        raise HTTPException(status_code=422, detail="Invalid crop: points must form a convex quadrilateral")
    if identify:
        result = await identifier.identify(jpeg, mime_type="image/jpeg", rectified=True)
        return result.to_dict()
    return Response(content=jpeg, media_type="image/jpeg")


@app.post("/chase")
async def chase(payload: dict):
    """Chase verdict and price for one candidate as returned by /identify."""
    known = {f.name for f in fields(VariantCandidate)}
    data = {k: v for k, v in payload.items() if k in known}
    if not data.get("card_name"):
        raise HTTPException(status_code=400, detail="card_name is required")
    data.setdefault("variant", "Normal")
    data.setdefault("confidence", 0.0)
    data.setdefault("match_source", "client")
    try:
        candidate = VariantCandidate(**data)
    except TypeError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    verdict = await get_identifier().evaluate_chase(candidate)
    return {"is_chase": verdict.is_chase, "price": verdict.price}
