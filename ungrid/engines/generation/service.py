"""
Gemini Image Generation & Panel Detection

Wraps the Gemini API behind two small interfaces the orchestrators depend on:

- ImageGenerationService.generate(request) -> image bytes
- PanelDetectionService.detect(image) -> bounding boxes (0-1000 space)

Failures are raised as the shared error taxonomy:
MissingCredentialError, ServiceRefusalError, EmptyResultError,
ExternalAPIError and DetectionError.
"""

import re
from typing import Callable, List, Optional, Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError as PydanticValidationError

from ungrid.core.config import settings
from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import (
    DetectionError,
    EmptyResultError,
    ExternalAPIError,
    MissingCredentialError,
    ServiceRefusalError,
)
from ungrid.core.logging import get_logger
from ungrid.core.metrics import record_generation_call
from ungrid.engines.extraction.imaging import ImageInput, downscale, image_mime_type, load_image, to_png_bytes
from ungrid.engines.extraction.schemas import BoundingBox, DetectionResponse
from ungrid.engines.generation.schemas import GenerationRequest

logger = get_logger(__name__)

DETECTION_PROMPT = (
    "Detect the bounding boxes of all distinct panels in this image. "
    "Return a JSON object with a 'panels' array containing objects with "
    "'ymin', 'xmin', 'ymax', 'xmax' where the values are integers from 0 to 1000 "
    "representing the relative position."
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|```$")


class ImageGenerationService(Protocol):
    async def generate(self, request: GenerationRequest) -> bytes:
        ...


class PanelDetectionService(Protocol):
    async def detect(self, image: ImageInput) -> List[BoundingBox]:
        ...


class GeminiImageService:
    """Gemini-backed generation and detection.

    A fresh client is built per call from the credential store, so a key set
    between runs is picked up without restarting.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        image_model: Optional[str] = None,
        detection_model: Optional[str] = None,
        client_factory: Optional[Callable[[str], genai.Client]] = None
    ):
        self.credentials = credentials
        self.image_model = image_model or settings.IMAGE_MODEL
        self.detection_model = detection_model or settings.DETECTION_MODEL
        self._client_factory = client_factory or (lambda api_key: genai.Client(api_key=api_key))

    def _client(self) -> genai.Client:
        api_key = self.credentials.get()
        if not api_key:
            raise MissingCredentialError()
        return self._client_factory(api_key)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> bytes:
        client = self._client()

        # Image first, then the optional reference, then the text
        contents = [types.Part.from_bytes(data=request.image, mime_type=image_mime_type(request.image))]
        if request.reference_image is not None:
            contents.append(types.Part.from_bytes(
                data=request.reference_image,
                mime_type=image_mime_type(request.reference_image)
            ))
        contents.append(request.prompt)

        image_config = types.ImageConfig(
            image_size=request.resolution.value,
            aspect_ratio=request.aspect_ratio.value if request.aspect_ratio else None,
        )

        logger.info(
            "generation_call_started",
            model=self.image_model,
            resolution=request.resolution.value,
            aspect_ratio=request.aspect_ratio.value if request.aspect_ratio else None,
            has_reference=request.reference_image is not None
        )

        try:
            response = await client.aio.models.generate_content(
                model=self.image_model,
                contents=contents,
                config=types.GenerateContentConfig(
                    response_modalities=["TEXT", "IMAGE"],
                    image_config=image_config,
                ),
            )
        except genai_errors.APIError as e:
            record_generation_call("generate", "transport_error")
            raise self._translate_api_error(e, service="gemini_image")

        try:
            image = self._extract_image(response)
        except ServiceRefusalError:
            record_generation_call("generate", "refused")
            raise
        except EmptyResultError:
            record_generation_call("generate", "empty")
            raise

        record_generation_call("generate", "success")
        logger.info("generation_call_completed", output_size=len(image))
        return image

    def _extract_image(self, response) -> bytes:
        """Return the first inline image, or raise with the refusal text."""
        refusal_text = ""
        candidates = getattr(response, "candidates", None) or []
        content = candidates[0].content if candidates else None
        for part in (getattr(content, "parts", None) or []):
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                return inline.data
            if getattr(part, "text", None):
                refusal_text += part.text

        if refusal_text:
            raise ServiceRefusalError(refusal_text[:settings.REFUSAL_TEXT_LIMIT])
        raise EmptyResultError()

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    async def detect(self, image: ImageInput) -> List[BoundingBox]:
        client = self._client()

        # Keep detection requests small; coordinates are relative anyway
        preview = to_png_bytes(downscale(load_image(image), settings.DETECTION_MAX_SIZE))

        try:
            response = await client.aio.models.generate_content(
                model=self.detection_model,
                contents=[
                    types.Part.from_bytes(data=preview, mime_type="image/png"),
                    DETECTION_PROMPT,
                ],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=DetectionResponse,
                ),
            )
        except genai_errors.APIError as e:
            record_generation_call("detect", "transport_error")
            raise self._translate_api_error(e, service="gemini_detection")

        boxes = self.parse_detection(response.text or "{}")
        record_generation_call("detect", "success" if boxes else "empty")
        logger.info("panel_detection_completed", box_count=len(boxes))
        return boxes

    @staticmethod
    def parse_detection(text: str) -> List[BoundingBox]:
        """Parse the detection JSON, tolerating markdown code fences."""
        cleaned = _CODE_FENCE.sub("", text.strip()).strip() or "{}"
        try:
            return DetectionResponse.model_validate_json(cleaned).panels
        except PydanticValidationError as e:
            raise DetectionError(f"Unreadable detection response: {e.error_count()} error(s)")

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    @staticmethod
    def _translate_api_error(error: genai_errors.APIError, service: str) -> Exception:
        message = str(error)
        if error.code == 401 or "API key not valid" in message:
            return MissingCredentialError(f"API key rejected: {message[:200]}")
        if service == "gemini_detection":
            return DetectionError(f"Detection call failed: {message[:200]}", http_status=error.code)
        return ExternalAPIError(
            f"Gemini API error: {message[:200]}",
            service=service,
            http_status=error.code
        )
