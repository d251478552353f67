"""
Extraction client: one label image in, four validated fields out.

Any transport, service or parse problem is raised as ExtractionError so the
caller can mark exactly one work item as failed.
"""

from typing import Any, Dict, Optional

from pydantic import ValidationError

from labsupply.errors import ExtractionError
from labsupply.llm import JSONParser, LLMClient, get_llm_client
from labsupply.logger import get_logger
from labsupply.models import ExtractedFields, ImageUpload

logger = get_logger(__name__)

EXTRACTION_PROMPT = (
    "Extract the key information from this image of a laboratory supply box. "
    "If a value is not found, return null."
)

FIELD_DESCRIPTIONS = {
    "productName": "The main name of the product/system.",
    "refNumber": "The reference number, often labeled 'REF'.",
    "lotNumber": "The lot number, often labeled 'LOT'.",
    "expirationDate": "The expiration date, often near an hourglass symbol. Format as YYYY-MM-DD if possible.",
}

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        name: {"type": ["string", "null"], "description": description}
        for name, description in FIELD_DESCRIPTIONS.items()
    },
    "required": list(FIELD_DESCRIPTIONS),
    "additionalProperties": False,
}

RESPONSE_FORMAT: Dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "lab_supply_label",
        "strict": True,
        "schema": EXTRACTION_SCHEMA,
    },
}


class ExtractionClient:
    """Requests the label fields for one image from the inference service."""

    def __init__(self, llm: Optional[LLMClient] = None, prompt: str = EXTRACTION_PROMPT):
        self._llm = llm
        self.prompt = prompt

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = get_llm_client()
        return self._llm

    async def extract(self, upload: ImageUpload) -> ExtractedFields:
        filename = upload.filename
        try:
            result = await self.llm.vision_json(
                self.prompt,
                upload.data,
                upload.media_type,
                response_format=RESPONSE_FORMAT,
                step="label_extract",
                filename=filename,
                strict=True,
            )
        except Exception as exc:
            raise ExtractionError(f"Service request failed: {exc}", filename=filename) from exc

        return self.parse_result(result, filename)

    @staticmethod
    def parse_result(result: Any, filename: Optional[str] = None) -> ExtractedFields:
        """
        Validate a parsed response into ExtractedFields.

        Null or missing keys mean "not found". Non-object output, unparseable
        text or non-string values are errors.
        """
        if JSONParser.is_parse_error(result):
            if result.get("parse_error") == "empty_output":
                raise ExtractionError("Service returned an empty response", filename=filename)
            preview = (result.get("raw_output") or "")[:200]
            raise ExtractionError(f"Service returned malformed JSON: {preview!r}", filename=filename)

        if not isinstance(result, dict):
            raise ExtractionError(
                f"Expected a JSON object, got {type(result).__name__}",
                filename=filename,
            )

        try:
            fields = ExtractedFields.model_validate(result)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
            )
            raise ExtractionError(f"Response failed validation: {problems}", filename=filename) from exc

        logger.debug("Extracted fields for %s: %s", filename, fields.as_dict())
        return fields
