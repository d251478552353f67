"""
Tests for file intake validation and settings loading.
"""
from io import BytesIO

import pytest
from PIL import Image

from conftest import PNG_BYTES
from labsupply.config import Settings, get_settings, load_settings, reset_settings
from labsupply.errors import ConfigurationError, IntakeError
from labsupply.intake import build_upload, collect_image_paths, detect_media_type, load_upload


class TestMediaType:
    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("box.png", "image/png"),
            ("BOX.JPG", "image/jpeg"),
            ("label.jpeg", "image/jpeg"),
            ("scan.webp", "image/webp"),
            ("anim.gif", "image/gif"),
        ],
    )
    def test_detected_from_extension(self, filename, expected):
        assert detect_media_type(filename) == expected

    def test_declared_image_type_wins(self):
        assert detect_media_type("upload", declared="image/webp") == "image/webp"
        assert detect_media_type("scan.png", declared="image/jpg") == "image/jpeg"

    def test_declared_type_the_service_cannot_read_is_rejected(self):
        with pytest.raises(IntakeError, match="image/heic"):
            detect_media_type("photo.heic", declared="image/heic")

    @pytest.mark.parametrize("filename", ["notes.txt", "report.pdf", "noextension"])
    def test_non_images_rejected(self, filename):
        with pytest.raises(IntakeError):
            detect_media_type(filename, declared="application/octet-stream")


class TestBuildUpload:
    def test_valid_upload(self):
        upload = build_upload("box.png", PNG_BYTES)

        assert upload.filename == "box.png"
        assert upload.media_type == "image/png"
        assert upload.size == len(PNG_BYTES)

    def test_empty_file_rejected(self):
        with pytest.raises(IntakeError, match="empty"):
            build_upload("box.png", b"")

    def test_oversized_file_rejected(self):
        with pytest.raises(IntakeError, match="too large") as exc_info:
            build_upload("huge.png", b"x" * (1024 * 1024 + 1), max_size_mb=1)

        assert exc_info.value.filename == "huge.png"

    @pytest.mark.parametrize("filename,fmt,mode", [("a.bmp", "BMP", "RGB"), ("a.tif", "TIFF", "CMYK"), ("b.tiff", "TIFF", "L")])
    def test_bmp_and_tiff_are_converted_to_png(self, filename, fmt, mode):
        buffer = BytesIO()
        Image.new(mode, (4, 3)).save(buffer, format=fmt)

        upload = build_upload(filename, buffer.getvalue())

        assert upload.filename == filename
        assert upload.media_type == "image/png"
        assert upload.data.startswith(b"\x89PNG")
        with Image.open(BytesIO(upload.data)) as converted:
            assert converted.size == (4, 3)

    def test_unreadable_tiff_rejected(self):
        with pytest.raises(IntakeError, match="Cannot read image") as exc_info:
            build_upload("broken.tif", b"not really a tiff")

        assert exc_info.value.filename == "broken.tif"


def test_load_and_collect_from_directory(tmp_path):
    (tmp_path / "a.png").write_bytes(PNG_BYTES)
    nested = tmp_path / "nested"
    nested.mkdir()
    (nested / "b.jpg").write_bytes(PNG_BYTES)
    (nested / "readme.txt").write_text("skip me")

    paths = collect_image_paths([str(tmp_path), str(tmp_path / "missing.png")])

    assert [p.split("/")[-1] for p in paths] == ["a.png", "b.jpg"]
    assert load_upload(paths[1]).media_type == "image/jpeg"


class TestSettings:
    def test_missing_api_key_is_configuration_error(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            load_settings(_env_file=None)

    def test_blank_api_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            load_settings(_env_file=None, OPENAI_API_KEY="   ")

    def test_defaults(self, monkeypatch):
        for name in ("CONCURRENCY_LIMIT", "PAUSE_THRESHOLD", "PAUSE_DURATION", "EXPORT_FILENAME"):
            monkeypatch.delenv(name, raising=False)

        settings = load_settings(_env_file=None, OPENAI_API_KEY="sk-test")

        assert settings.CONCURRENCY_LIMIT == 2
        assert settings.PAUSE_THRESHOLD == 8
        assert settings.PAUSE_DURATION == 70
        assert settings.EXPORT_FILENAME == "LabSupplyData.xlsx"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("CONCURRENCY_LIMIT", "4")
        monkeypatch.setenv("pause_threshold", "0")

        settings = Settings(_env_file=None)

        assert settings.OPENAI_API_KEY == "sk-env"
        assert settings.CONCURRENCY_LIMIT == 4
        assert settings.PAUSE_THRESHOLD == 0

    def test_invalid_concurrency_rejected(self):
        with pytest.raises(ConfigurationError, match="CONCURRENCY_LIMIT"):
            load_settings(_env_file=None, OPENAI_API_KEY="sk-test", CONCURRENCY_LIMIT=0)

    def test_zero_extraction_timeout_rejected(self):
        with pytest.raises(ConfigurationError, match="EXTRACTION_TIMEOUT"):
            load_settings(_env_file=None, OPENAI_API_KEY="sk-test", EXTRACTION_TIMEOUT=0)

    def test_get_settings_is_cached(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-cached")
        reset_settings()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings()
