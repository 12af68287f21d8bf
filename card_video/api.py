"""FastAPI boundary for slideshow generation.

Run with ``uvicorn card_video.api:app``; the YAML config is taken from the
``CARD_VIDEO_CONFIG`` environment variable when set.
"""

from __future__ import annotations

from typing import List, Optional, Union

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from config_loader import AppConfig, load_config_from_env
from logging_utils import get_logger

from .errors import CardVideoError, InvalidRequest
from .models import Card
from .pipeline import VideoPipeline

logger = get_logger(__name__)

ROUTE = "/api/generate-video"


class CardPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[Union[str, int]] = None
    title: Optional[str] = None
    image_reference: Optional[str] = Field(default=None, alias="image_url")

    def to_card(self) -> Card:
        return Card(
            title=self.title or "",
            image_reference=self.image_reference,
            card_id=str(self.id) if self.id is not None else None,
        )


class GenerateVideoRequest(BaseModel):
    cards: Optional[List[CardPayload]] = Field(default=None, description="Cards in playback order")


class StatusResponse(BaseModel):
    status: str = "ready"


def create_app(config: AppConfig | None = None, pipeline: VideoPipeline | None = None) -> FastAPI:
    """Build the app; ``pipeline`` may be injected for tests."""
    app_config = config or load_config_from_env()
    video_pipeline = pipeline or VideoPipeline(app_config)
    app = FastAPI(title="Card slideshow video")

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("generate-video rejected | code=%s errors=%d", InvalidRequest.code, len(exc.errors()))
        return JSONResponse(status_code=InvalidRequest.status_code, content={"error": InvalidRequest.public_message})

    @app.get(ROUTE, response_model=StatusResponse)
    def generator_status() -> StatusResponse:
        return StatusResponse()

    # Sync handler: FastAPI runs it in the worker threadpool, so a long encode
    # never blocks the event loop for other requests.
    @app.post(ROUTE)
    def generate_video(request: Optional[GenerateVideoRequest] = Body(default=None)) -> Response:
        cards = [item.to_card() for item in (request.cards or [])] if request else []
        try:
            video = video_pipeline.generate(cards)
        except CardVideoError as exc:
            logger.warning("generate-video rejected | code=%s status=%d", exc.code, exc.status_code)
            return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

        return Response(
            content=video.content,
            media_type=video.mime_type,
            headers={
                "Content-Disposition": f'attachment; filename="{video.filename}"',
                "Content-Length": str(video.size),
            },
        )

    return app


app = create_app()
