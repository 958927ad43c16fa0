"""Message types exchanged between clients and the relay server.

Every message is a JSON object sent as a single WebSocket text frame. The
`message_type` key holds the wire name of the message (e.g.,
`#!python 'find-partner'`) and the remaining keys hold the message fields.

Signaling messages ([`Offer`][peerpair.relay.messages.Offer],
[`Answer`][peerpair.relay.messages.Answer], and
[`IceCandidate`][peerpair.relay.messages.IceCandidate]) carry an opaque
`payload` which the relay server never inspects.
"""
from __future__ import annotations

import dataclasses
import enum
import json
import uuid
from typing import Any


class MessageType(enum.Enum):
    """Types of messages supported and their wire names."""

    connected = 'connected'
    """Greeting sent by the server with the client's handle."""
    find_partner = 'find-partner'
    """Client request to be matched with a partner."""
    matched = 'matched'
    """Server notification that a partner was found."""
    offer = 'offer'
    """Session description offer relayed to the partner."""
    answer = 'answer'
    """Session description answer relayed to the partner."""
    ice_candidate = 'ice-candidate'
    """ICE candidate relayed to the partner."""
    leave_chat = 'leave-chat'
    """Client request to leave the current session or waiting queue."""
    partner_disconnected = 'partner-disconnected'
    """Server notification that the partner left or disconnected."""


@dataclasses.dataclass
class Message:
    """Base message."""

    pass


@dataclasses.dataclass
class Connected(Message):
    """Greeting sent by the relay server when a client connects.

    Attributes:
        handle: Handle assigned to the client's connection. The handle is
            only valid for the lifetime of the connection.
    """

    handle: uuid.UUID
    message_type: str = MessageType.connected.value


@dataclasses.dataclass
class FindPartner(Message):
    """Request to be matched with a partner.

    Attributes:
        request_id: Optional identifier chosen by the client. The relay
            server echoes it in the resulting
            [`Matched`][peerpair.relay.messages.Matched] notification so the
            client can discard notifications answering an earlier request.
    """

    request_id: str | None = None
    message_type: str = MessageType.find_partner.value


@dataclasses.dataclass
class LeaveChat(Message):
    """Request to leave the current session or the waiting queue."""

    message_type: str = MessageType.leave_chat.value


@dataclasses.dataclass
class Matched(Message):
    """Notification that the client was paired with a partner.

    Attributes:
        initiator: If this client should create the first offer.
        request_id: Identifier of the
            [`FindPartner`][peerpair.relay.messages.FindPartner] request
            this notification answers, if the request had one.
    """

    initiator: bool
    request_id: str | None = None
    message_type: str = MessageType.matched.value


@dataclasses.dataclass
class PartnerDisconnected(Message):
    """Notification that the partner left the session."""

    message_type: str = MessageType.partner_disconnected.value


@dataclasses.dataclass
class SignalingMessage(Message):
    """Base type of messages relayed between two paired clients.

    Attributes:
        payload: Opaque JSON-serializable negotiation payload.
    """

    payload: Any


@dataclasses.dataclass
class Offer(SignalingMessage):
    """Session description offer."""

    message_type: str = MessageType.offer.value


@dataclasses.dataclass
class Answer(SignalingMessage):
    """Session description answer."""

    message_type: str = MessageType.answer.value


@dataclasses.dataclass
class IceCandidate(SignalingMessage):
    """ICE candidate discovered by the sender."""

    message_type: str = MessageType.ice_candidate.value


_MESSAGE_CLASSES: dict[MessageType, type[Message]] = {
    MessageType.connected: Connected,
    MessageType.find_partner: FindPartner,
    MessageType.matched: Matched,
    MessageType.offer: Offer,
    MessageType.answer: Answer,
    MessageType.ice_candidate: IceCandidate,
    MessageType.leave_chat: LeaveChat,
    MessageType.partner_disconnected: PartnerDisconnected,
}


class MessageError(Exception):
    """Base exception type for relay messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def handle_to_str(data: dict[str, Any]) -> dict[str, Any]:
    """Cast any handles to strings.

    Returns:
        Shallow copy of the input dictionary with values cast from UUID \
        to str if their key is `handle`.
    """
    data = data.copy()
    if isinstance(data.get('handle'), uuid.UUID):
        data['handle'] = str(data['handle'])
    return data


def str_to_handle(data: dict[str, Any]) -> dict[str, Any]:
    """Cast a handle string to a UUID.

    The inverse operation of
    [handle_to_str()][peerpair.relay.messages.handle_to_str].

    Raises:
        MessageDecodeError: If the `handle` value cannot be cast to a UUID.
    """
    data = data.copy()
    if 'handle' in data:
        try:
            data['handle'] = uuid.UUID(data['handle'])
        except (AttributeError, TypeError, ValueError) as e:
            raise MessageDecodeError(
                'Failed to convert key handle to UUID.',
            ) from e
    return data


def decode_message(message: str) -> Message:
    """Decode JSON string into correct message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError('Message is not a JSON object.')

    try:
        message_type_name = data.pop('message_type')
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain a message_type key.',
        ) from e

    try:
        message_type = _MESSAGE_CLASSES[MessageType(message_type_name)]
    except (KeyError, ValueError) as e:
        raise MessageDecodeError(
            'The message is of an unknown message type: '
            f'{message_type_name}.',
        ) from e

    data = str_to_handle(data)

    try:
        return message_type(**data)
    except TypeError as e:
        raise MessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e


def encode_message(message: Message) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, Message):
        raise MessageEncodeError(
            f'Message is not an instance of {Message.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data = dataclasses.asdict(message)
    data = handle_to_str(data)

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise MessageEncodeError('Error encoding message.') from e
