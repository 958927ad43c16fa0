from __future__ import annotations

import json
import uuid
from typing import Any

import pytest

from peerpair.relay.messages import Answer
from peerpair.relay.messages import Connected
from peerpair.relay.messages import decode_message
from peerpair.relay.messages import encode_message
from peerpair.relay.messages import FindPartner
from peerpair.relay.messages import handle_to_str
from peerpair.relay.messages import IceCandidate
from peerpair.relay.messages import LeaveChat
from peerpair.relay.messages import Matched
from peerpair.relay.messages import Message
from peerpair.relay.messages import MessageDecodeError
from peerpair.relay.messages import MessageEncodeError
from peerpair.relay.messages import Offer
from peerpair.relay.messages import PartnerDisconnected
from peerpair.relay.messages import str_to_handle

_TEST_HANDLE = uuid.uuid4()


def test_handle_to_str_conversion() -> None:
    assert handle_to_str({'handle': _TEST_HANDLE}) == {
        'handle': str(_TEST_HANDLE),
    }
    # Do not convert other keys or non-UUID values
    assert handle_to_str({'other': _TEST_HANDLE}) == {'other': _TEST_HANDLE}
    assert handle_to_str({'handle': 1234}) == {'handle': 1234}


@pytest.mark.parametrize(
    ('data', 'result', 'exception'),
    (
        ({'handle': str(_TEST_HANDLE)}, {'handle': _TEST_HANDLE}, False),
        ({'other': str(_TEST_HANDLE)}, {'other': str(_TEST_HANDLE)}, False),
        ({'handle': 'abc'}, None, True),
        ({'handle': {}}, None, True),
    ),
)
def test_str_to_handle_conversion(
    data: dict[str, Any],
    result: dict[str, Any] | None,
    exception: bool,
) -> None:
    if exception:
        with pytest.raises(MessageDecodeError):
            str_to_handle(data)
    else:
        assert str_to_handle(data) == result


@pytest.mark.parametrize(
    ('message', 'wire_type'),
    (
        (Connected(_TEST_HANDLE), 'connected'),
        (FindPartner(), 'find-partner'),
        (Matched(initiator=True), 'matched'),
        (Offer({'type': 'offer', 'sdp': 'v=0'}), 'offer'),
        (Answer({'type': 'answer', 'sdp': 'v=0'}), 'answer'),
        (IceCandidate({'candidate': 'candidate:1'}), 'ice-candidate'),
        (LeaveChat(), 'leave-chat'),
        (PartnerDisconnected(), 'partner-disconnected'),
    ),
)
def test_encode_decode(message: Message, wire_type: str) -> None:
    message_str = encode_message(message)
    assert json.loads(message_str)['message_type'] == wire_type
    assert decode_message(message_str) == message


def test_signaling_payload_is_kept_as_json() -> None:
    payload = {'candidate': 'candidate:1', 'sdpMid': '0', 'sdpMLineIndex': 0}
    message_str = encode_message(IceCandidate(payload))

    assert json.loads(message_str) == {
        'payload': payload,
        'message_type': 'ice-candidate',
    }


def test_decode_message_without_fields() -> None:
    message = decode_message('{"message_type": "find-partner"}')
    assert isinstance(message, FindPartner)


@pytest.mark.parametrize(
    'message_str',
    (
        'not json',
        '[1, 2, 3]',
        '{"initiator": true}',
        '{"message_type": "unknown"}',
        '{"message_type": "matched"}',
        '{"message_type": "find-partner", "extra": 1}',
        '{"message_type": "connected", "handle": "abc"}',
    ),
)
def test_decode_message_errors(message_str: str) -> None:
    with pytest.raises(MessageDecodeError):
        decode_message(message_str)


def test_encode_message_errors() -> None:
    with pytest.raises(MessageEncodeError):
        encode_message(object())  # type: ignore[arg-type]

    with pytest.raises(MessageEncodeError):
        encode_message(Offer(payload=object()))
