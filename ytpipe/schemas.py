"""
Request validation for the HTTP boundary using Pydantic.
"""

from typing import List
from urllib.parse import urlparse

from pydantic import BaseModel, ValidationError, field_validator

from .constants import OUTPUT_FORMATS
from .exceptions import InvalidRequestError


class StartDownloadRequest(BaseModel):
    """Body of POST /start-download."""
    url: str
    format: str = 'mp3'

    @field_validator('url')
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Requires an absolute http(s) URL."""
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ('http', 'https') or not parsed.hostname:
            raise ValueError("url must be an absolute http(s) URL")
        return value

    @field_validator('format', mode='before')
    @classmethod
    def validate_format(cls, value: object) -> str:
        """Lower-cases the format and checks it against the supported set."""
        fmt = str(value or 'mp3').strip().lower()
        if fmt not in OUTPUT_FORMATS:
            raise ValueError(f"format must be one of: {', '.join(OUTPUT_FORMATS)}")
        return fmt


def parse_start_request(payload: object, allowed_hosts: List[str]) -> StartDownloadRequest:
    """
    Validates a start-download payload.

    Args:
        payload: The decoded JSON body.
        allowed_hosts: Host names jobs may be created for.

    Returns:
        The validated request.

    Raises:
        InvalidRequestError: With a message suitable for the client.
    """
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        request = StartDownloadRequest.model_validate(payload)
    except ValidationError as e:
        error_details = e.errors()[0]
        field = error_details['loc'][0] if error_details['loc'] else 'body'
        if field == 'url':
            raise InvalidRequestError("Invalid YouTube URL")
        if field == 'format':
            raise InvalidRequestError("Invalid format")
        raise InvalidRequestError(f"Error in field '{field}': {error_details['msg']}")

    hostname = (urlparse(request.url).hostname or '').lower()
    if hostname not in allowed_hosts:
        raise InvalidRequestError("Invalid YouTube URL")
    return request
