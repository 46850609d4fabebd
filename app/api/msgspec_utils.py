"""Utility helpers for msgspec request decoding and response encoding."""

from __future__ import annotations

from typing import TypeVar

import msgspec
from fastapi import HTTPException, status
from starlette.responses import Response

T = TypeVar("T", bound=msgspec.Struct)


def decode_msgspec_body(payload_bytes: bytes, struct_type: type[T]) -> T:
  """Decode a raw JSON body into a msgspec.Struct value, mapping decode failures to 400."""
  try:
    return msgspec.json.decode(payload_bytes, type=struct_type)
  except msgspec.DecodeError as exc:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid request payload: {exc}") from exc


def encode_msgspec_response(payload: msgspec.Struct, *, status_code: int = 200) -> Response:
  """Encode a msgspec.Struct value as a JSON HTTP response."""
  encoded = msgspec.json.encode(payload)
  return Response(content=encoded, status_code=status_code, media_type="application/json")
