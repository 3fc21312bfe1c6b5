"""
Serialization and validation of collab envelopes.

Envelopes are plain JSON objects, so any adapter that carries text can use
serialize() and deserialize() directly. Faults are reduced to strings before
they leave the process.
"""

import json
from typing import Any, Callable, Optional, Union

from .core import CALL, RETURN, Envelope, MalformedEnvelopeError


def serialize(envelope: Envelope) -> str:
    """
    Encode an envelope as JSON text.

    Raises:
        TypeError, ValueError: if the envelope holds values JSON cannot represent
    """
    return json.dumps(envelope, allow_nan=False)


def deserialize(text: Union[str, bytes]) -> Envelope:
    """
    Decode JSON text into a validated envelope. Bytes are read as UTF-8.

    Raises:
        MalformedEnvelopeError: if the text is not a valid envelope
    """
    if isinstance(text, (bytes, bytearray)):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedEnvelopeError(f"Envelope is not valid UTF-8: {e}") from e
    try:
        envelope = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedEnvelopeError(f"Invalid JSON in envelope: {e}") from e
    validate_envelope(envelope)
    return envelope


def validate_envelope(envelope: Any) -> None:
    """Check the shape of a decoded envelope."""
    if not isinstance(envelope, dict):
        raise MalformedEnvelopeError(f"Envelope must be an object, got {type(envelope).__name__}")

    message_type = envelope.get("type")
    if message_type not in (CALL, RETURN):
        raise MalformedEnvelopeError(f"Unknown message with type {message_type!r} arrived!")

    if not isinstance(envelope.get("transactionId"), str):
        raise MalformedEnvelopeError(f"{message_type} envelope has no transactionId")

    if message_type == CALL:
        if not isinstance(envelope.get("functionName"), str):
            raise MalformedEnvelopeError("call envelope has no functionName")
        args = envelope.get("args")
        if args is not None and not isinstance(args, list):
            raise MalformedEnvelopeError("call envelope args must be a list")
    else:
        error = envelope.get("error")
        if error is not None and not isinstance(error, str):
            raise MalformedEnvelopeError("return envelope error must be a string")


def error_message(error: BaseException,
                  on_send_error: Optional[Callable[[Exception], Optional[Exception]]] = None) -> str:
    """
    Reduce a fault to the message string that is sent to the caller.

    Args:
        error: The exception raised by a local method
        on_send_error: Optional hook that may return a replacement exception,
            for example to redact sensitive details
    """
    if on_send_error is not None and isinstance(error, Exception):
        replacement = on_send_error(error)
        if replacement is not None:
            error = replacement
    return str(error) or type(error).__name__
