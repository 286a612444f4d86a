"""
Wire envelope shared by every transport.

Frames are UTF-8 JSON objects. Binary fields (nonces, ciphertexts,
wrapped keys) travel base64-encoded. The same envelope carries handshake
messages, encrypted requests and responses, health probes and error
reports.
"""

import base64
import binascii
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..exceptions import CorelinkError, MessageFormatError


class MessageType(Enum):
    """Envelope types."""
    HELLO = "hello"
    HELLO_ACK = "hello_ack"
    KEY_EXCHANGE = "key_exchange"
    KEY_EXCHANGE_ACK = "key_exchange_ack"
    ROTATE = "rotate"
    ROTATE_ACK = "rotate_ack"
    REQUEST = "request"
    RESPONSE = "response"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"

    @property
    def is_handshake(self) -> bool:
        return self in _HANDSHAKE_TYPES

    @property
    def is_reply(self) -> bool:
        """Replies are routed to a waiting sender instead of being handled."""
        return self in _REPLY_TYPES


_HANDSHAKE_TYPES = frozenset({
    MessageType.HELLO, MessageType.HELLO_ACK,
    MessageType.KEY_EXCHANGE, MessageType.KEY_EXCHANGE_ACK,
    MessageType.ROTATE, MessageType.ROTATE_ACK,
})

_REPLY_TYPES = frozenset({
    MessageType.HELLO_ACK, MessageType.KEY_EXCHANGE_ACK, MessageType.ROTATE_ACK,
    MessageType.RESPONSE, MessageType.PONG, MessageType.ERROR,
})

# attribute name -> (wire key, is binary)
_FIELDS = {
    'message_id': ('messageId', False),
    'reply_to': ('replyTo', False),
    'request_id': ('requestId', False),
    'nonce': ('nonce', True),
    'fingerprint': ('fingerprint', False),
    'encrypted_session_key': ('encryptedSessionKey', True),
    'epoch': ('epoch', False),
    'key_check': ('keyCheck', True),
    'proof': ('proof', False),
    'ciphertext': ('ciphertext', True),
    'error': ('error', False),
}

_REQUIRED = {
    MessageType.HELLO: ('nonce', 'fingerprint'),
    MessageType.HELLO_ACK: ('reply_to', 'nonce', 'fingerprint'),
    MessageType.KEY_EXCHANGE: ('nonce', 'encrypted_session_key', 'epoch'),
    MessageType.KEY_EXCHANGE_ACK: ('reply_to', 'nonce', 'key_check'),
    MessageType.ROTATE: ('nonce', 'encrypted_session_key', 'epoch'),
    MessageType.ROTATE_ACK: ('reply_to', 'nonce', 'key_check'),
    MessageType.REQUEST: ('request_id', 'nonce', 'epoch', 'ciphertext'),
    MessageType.RESPONSE: ('request_id', 'nonce', 'epoch', 'ciphertext'),
    MessageType.PING: ('request_id',),
    MessageType.PONG: ('request_id',),
    MessageType.ERROR: ('error',),
}


@dataclass
class Envelope:
    """One framed message between two cores; ``core_id`` names the sender."""

    type: MessageType
    core_id: int
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    reply_to: Optional[str] = None
    request_id: Optional[str] = None
    nonce: Optional[bytes] = None
    fingerprint: Optional[str] = None
    encrypted_session_key: Optional[bytes] = None
    epoch: Optional[int] = None
    key_check: Optional[bytes] = None
    proof: Optional[str] = None
    ciphertext: Optional[bytes] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def correlation_id(self) -> Optional[str]:
        """Key used to match a reply with the message that caused it."""
        return self.reply_to or self.request_id

    def reply(self, message_type: MessageType, core_id: int, **fields: Any) -> 'Envelope':
        """Build a reply correlated with this envelope."""
        values: Dict[str, Any] = {'request_id': self.request_id}
        values.update(fields)
        return Envelope(
            type=message_type,
            core_id=core_id,
            reply_to=self.message_id,
            **values
        )

    def error_reply(self, core_id: int, error: CorelinkError) -> 'Envelope':
        """Build an error report correlated with this envelope."""
        return self.reply(MessageType.ERROR, core_id, error={
            'kind': error.kind,
            'message': error.message,
        })

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': self.type.value, 'coreId': self.core_id}
        for attr, (key, binary) in _FIELDS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if binary:
                value = base64.b64encode(value).decode('ascii')
            data[key] = value
        return data

    def encode(self) -> bytes:
        """Serialize to frame bytes."""
        return json.dumps(self.to_dict(), separators=(',', ':')).encode('utf-8')

    @classmethod
    def from_dict(cls, data: Any) -> 'Envelope':
        if not isinstance(data, dict):
            raise MessageFormatError("Envelope must be a JSON object")

        try:
            message_type = MessageType(data.get('type'))
        except ValueError:
            raise MessageFormatError(f"Unknown message type: {data.get('type')!r}")

        core_id = data.get('coreId')
        if not isinstance(core_id, int) or isinstance(core_id, bool) or core_id < 0:
            raise MessageFormatError(f"Invalid coreId: {core_id!r}")

        values: Dict[str, Any] = {}
        for attr, (key, binary) in _FIELDS.items():
            if key not in data or data[key] is None:
                continue
            value = data[key]
            if binary:
                if not isinstance(value, str):
                    raise MessageFormatError(f"Field {key} must be base64 text")
                try:
                    value = base64.b64decode(value.encode('ascii'), validate=True)
                except (binascii.Error, UnicodeEncodeError) as e:
                    raise MessageFormatError(f"Field {key} is not valid base64: {e}")
            elif attr == 'epoch':
                if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                    raise MessageFormatError(f"Invalid epoch: {value!r}")
            elif attr == 'error':
                if not isinstance(value, dict):
                    raise MessageFormatError("Field error must be an object")
            elif not isinstance(value, str):
                raise MessageFormatError(f"Field {key} must be a string")
            values[attr] = value

        missing = [
            _FIELDS[attr][0] for attr in _REQUIRED[message_type] if attr not in values
        ]
        if missing:
            raise MessageFormatError(
                f"{message_type.value} message missing fields: {', '.join(missing)}",
                core_id=core_id
            )

        if 'message_id' not in values:
            values['message_id'] = uuid.uuid4().hex

        return cls(type=message_type, core_id=core_id, **values)

    @classmethod
    def decode(cls, data: bytes) -> 'Envelope':
        """Parse frame bytes, raising MessageFormatError on malformed input."""
        try:
            parsed = json.loads(data.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessageFormatError(f"Frame is not valid JSON: {e}")
        return cls.from_dict(parsed)
