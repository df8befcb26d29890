"""Pydantic request models for the Living Lexicon API.

Request fields are optional at the schema level on purpose: a missing or
empty field is reported by the route as a :class:`ValidationFailure` with
the shared ``{"error", "code"}`` body instead of FastAPI's default 422
payload.  Browser clients send camelCase keys (``sessionId``), which are
accepted alongside the snake_case field names.

Models
------
ScanRequest
    Payload for ``POST /api/scan``: a base64 image and the session id.
TtsRequest
    Payload for ``POST /api/tts``: the text to narrate.
PlayerRequest
    Payload for ``POST /api/player``: session id and display name.
"""

from __future__ import annotations

import base64
import binascii

from pydantic import BaseModel, ConfigDict, Field

from lexicon.core.errors import ValidationFailure


class ScanRequest(BaseModel):
    """Request body for ``POST /api/scan``.

    Attributes:
        image: Base64-encoded image.  A ``data:<mime>;base64,`` prefix is
            accepted and stripped.
        session_id: Caller-chosen session identifier (``sessionId`` in JSON).
    """

    model_config = ConfigDict(populate_by_name=True)

    image: str | None = Field(default=None, description="Base64-encoded image")
    session_id: str | None = Field(
        default=None,
        alias="sessionId",
        description="Session identifier grouping the caller's results",
    )

    def decode_image(self, max_bytes: int) -> tuple[bytes, str | None]:
        """Decode :attr:`image` into raw bytes.

        Args:
            max_bytes: Decoded size limit.  Strings that cannot decode to
                ``max_bytes`` or less are rejected before decoding.

        Returns:
            ``(payload, mime_type)``; ``mime_type`` is ``None`` unless the
            string carried a data-URI prefix.

        Raises:
            ValidationFailure: Missing, oversized or malformed image.
        """
        if not self.image:
            raise ValidationFailure("Base64 image required")

        encoded = self.image
        mime_type = None
        if encoded.startswith("data:"):
            header, _, encoded = encoded.partition(",")
            mime_type = header[len("data:") :].split(";")[0] or None

        encoded = "".join(encoded.split())
        # Four base64 characters carry three bytes.
        if (len(encoded) // 4) * 3 - 2 > max_bytes:
            raise ValidationFailure(
                f"Image too large (max {max_bytes} bytes)",
                code="PAYLOAD_TOO_LARGE",
                status_code=413,
            )
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationFailure("Image is not valid base64") from exc
        return payload, mime_type


class TtsRequest(BaseModel):
    """Request body for ``POST /api/tts``."""

    text: str | None = Field(default=None, description="Text to narrate")


class PlayerRequest(BaseModel):
    """Request body for ``POST /api/player``.

    Attributes:
        session_id: Session to name (``sessionId`` in JSON).
        name: Display name; trimmed and cut to 20 characters.
    """

    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    name: str | None = Field(default=None, description="Display name")
