"""
Signed object read references: expiry, token type, issuance against storage.
"""
import jwt
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock

from services.object_access_token import (
    OBJECT_ACCESS_SECRET,
    ObjectAccessError,
    ObjectAccessIssuer,
    generate_object_access_token,
    validate_object_access_token,
)
from services.object_storage import InvalidImageData, decode_image_text, scan_object_path


class TestTokens:

    def test_valid_token_round_trip(self):
        token = generate_object_access_token("user-1/scan-1/front.jpg")
        payload = validate_object_access_token(token)
        assert payload["path"] == "user-1/scan-1/front.jpg"
        assert payload["type"] == "scan_object_access"

    def test_expired_token_rejected(self):
        token = generate_object_access_token("user-1/scan-1/front.jpg", validity_seconds=-5)
        assert validate_object_access_token(token) is None

    def test_wrong_type_rejected(self):
        token = jwt.encode(
            {"type": "document_access", "path": "x", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            OBJECT_ACCESS_SECRET,
            algorithm="HS256",
        )
        assert validate_object_access_token(token) is None

    def test_wrong_secret_rejected(self):
        token = jwt.encode(
            {"type": "scan_object_access", "path": "x", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            "another-secret",
            algorithm="HS256",
        )
        assert validate_object_access_token(token) is None

    def test_garbage_rejected(self):
        assert validate_object_access_token("not-a-token") is None


class TestIssuer:

    @pytest.mark.asyncio
    async def test_issues_url_for_existing_object(self):
        storage = MagicMock(get_object_metadata=AsyncMock(return_value=MagicMock()))
        issued = await ObjectAccessIssuer(storage=storage).issue_read_access("u/s/front.jpg")
        token = issued["url"].rsplit("/", 1)[1]
        assert "/api/scans/objects/" in issued["url"]
        assert validate_object_access_token(token)["path"] == "u/s/front.jpg"

    @pytest.mark.asyncio
    async def test_missing_object_is_an_error(self):
        storage = MagicMock(get_object_metadata=AsyncMock(return_value=None))
        with pytest.raises(ObjectAccessError):
            await ObjectAccessIssuer(storage=storage).issue_read_access("u/s/front.jpg")

    @pytest.mark.asyncio
    async def test_storage_failure_is_an_error(self):
        storage = MagicMock(get_object_metadata=AsyncMock(side_effect=ConnectionError("down")))
        with pytest.raises(ObjectAccessError):
            await ObjectAccessIssuer(storage=storage).issue_read_access("u/s/front.jpg")


class TestImageDecoding:

    def test_data_url(self):
        content, content_type = decode_image_text("data:image/png;base64,aGVsbG8=")
        assert content == b"hello"
        assert content_type == "image/png"

    def test_bare_base64_defaults_to_jpeg(self):
        content, content_type = decode_image_text("aGVsbG8=")
        assert content == b"hello"
        assert content_type == "image/jpeg"

    @pytest.mark.parametrize("bad", ["", "data:image/jpeg;base64,", "***"])
    def test_invalid(self, bad):
        with pytest.raises(InvalidImageData):
            decode_image_text(bad)

    def test_path_convention(self):
        assert scan_object_path("u1", "s1", "side") == "u1/s1/side.jpg"
