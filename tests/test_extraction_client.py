"""
Unit tests for labsupply.extraction.ExtractionClient.

The LLM client is replaced with an AsyncMock; responses go through the real
JSONParser so malformed text is exercised end to end.
Only a whole JSON value (optionally wrapped in one code fence) is accepted.
"""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import make_upload
from labsupply.errors import ExtractionError
from labsupply.extraction import EXTRACTION_PROMPT, EXTRACTION_SCHEMA, RESPONSE_FORMAT, ExtractionClient
from labsupply.llm import JSONParser


def client_returning(text: str) -> ExtractionClient:
    llm = Mock()
    llm.vision_json = AsyncMock(return_value=JSONParser.parse_strict(text))
    return ExtractionClient(llm=llm)


def extract(client: ExtractionClient, name: str = "box.png"):
    return asyncio.run(client.extract(make_upload(name)))


class TestSuccessfulExtraction:

    def test_all_fields_present(self):
        client = client_returning(
            '{"productName": "Glucose Assay", "refNumber": "REF 0412", '
            '"lotNumber": "LOT-77", "expirationDate": "2027-03-01"}'
        )

        fields = extract(client)

        assert fields.product_name == "Glucose Assay"
        assert fields.ref_number == "REF 0412"
        assert fields.lot_number == "LOT-77"
        assert fields.expiration_date == "2027-03-01"

    def test_null_and_missing_fields_mean_not_found(self):
        client = client_returning('{"productName": "Pipette Tips", "refNumber": null, "lotNumber": ""}')

        fields = extract(client)

        assert fields.product_name == "Pipette Tips"
        assert fields.ref_number is None
        assert fields.lot_number is None
        assert fields.expiration_date is None

    def test_numeric_values_are_kept_as_text(self):
        client = client_returning('{"productName": "Buffer", "refNumber": 10045, "lotNumber": null, "expirationDate": null}')

        assert extract(client).ref_number == "10045"

    def test_fenced_json_is_accepted(self):
        client = client_returning('```json\n{"productName": "Slides", "refNumber": "R1", "lotNumber": "L1", "expirationDate": null}\n```')

        assert extract(client).product_name == "Slides"

    def test_request_carries_image_schema_and_filename(self):
        llm = Mock()
        llm.vision_json = AsyncMock(return_value={"productName": "X"})
        client = ExtractionClient(llm=llm)
        upload = make_upload("label.jpg", data=b"jpegbytes", media_type="image/jpeg")

        asyncio.run(client.extract(upload))

        args, kwargs = llm.vision_json.call_args
        assert args == (EXTRACTION_PROMPT, b"jpegbytes", "image/jpeg")
        assert kwargs["response_format"] is RESPONSE_FORMAT
        assert kwargs["filename"] == "label.jpg"
        assert kwargs["strict"] is True


class TestFailures:

    def test_malformed_text_is_error(self):
        client = client_returning("Sorry, I cannot read this label.")

        with pytest.raises(ExtractionError) as exc_info:
            extract(client, "blurry.png")

        assert "malformed" in str(exc_info.value)
        assert exc_info.value.filename == "blurry.png"

    @pytest.mark.parametrize(
        "text",
        [
            '{"productName": "A", "refNumber": null}{"productName": "B"}',
            'I think it says {"productName": "A"} but the LOT is unreadable',
            '{"productName": "A"} garbage trailing',
            'Here you go:\n```json\n{"productName": "A"}\n```',
        ],
    )
    def test_partial_json_in_text_is_error(self, text):
        client = client_returning(text)

        with pytest.raises(ExtractionError, match="malformed JSON"):
            extract(client, "mixed.png")

    def test_empty_response_is_error(self):
        client = client_returning("")

        with pytest.raises(ExtractionError, match="empty response"):
            extract(client)

    def test_json_array_is_error(self):
        client = client_returning('[{"productName": "A"}]')

        with pytest.raises(ExtractionError, match="Expected a JSON object"):
            extract(client)

    def test_wrong_value_type_is_error(self):
        client = client_returning('{"productName": {"name": "nested"}, "refNumber": null}')

        with pytest.raises(ExtractionError, match="failed validation"):
            extract(client)

    def test_service_exception_is_wrapped(self):
        llm = Mock()
        llm.vision_json = AsyncMock(side_effect=ConnectionError("connection reset"))
        client = ExtractionClient(llm=llm)

        with pytest.raises(ExtractionError) as exc_info:
            extract(client, "box7.png")

        assert "connection reset" in str(exc_info.value)
        assert exc_info.value.filename == "box7.png"
        assert isinstance(exc_info.value.__cause__, ConnectionError)


def test_schema_requests_four_nullable_strings():
    properties = EXTRACTION_SCHEMA["properties"]

    assert list(properties) == ["productName", "refNumber", "lotNumber", "expirationDate"]
    assert all(prop["type"] == ["string", "null"] for prop in properties.values())
    assert EXTRACTION_SCHEMA["additionalProperties"] is False
