"""
mDNS Packets

Design Decision: Packet Codec
=============================

Options Considered:
1. Hand-written RFC 1035 encoder/decoder
2. zeroconf's DNS record classes (DNSOutgoing / DNSIncoming)
3. Custom JSON over multicast

Decision: zeroconf records
- Real mDNS on the wire, so standard tools (avahi-browse, tcpdump) can
  inspect the traffic
- zeroconf is already how this codebase speaks mDNS
- Name compression and record parsing are handled for us

The rest of the package never sees zeroconf types: packets are decoded
into the small ``MDNSPacket`` model below.

Record usage:
- SRV: ``{target, port}`` a session can be reached at; target
  ``0.0.0.0`` means "the address this packet came from"
- TXT: the session identity, a single length-prefixed string
- A: in a response, the querier's address as the responder saw it
"""

import socket
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from zeroconf import DNSAddress, DNSIncoming, DNSOutgoing, DNSQuestion, DNSService, DNSText
from zeroconf.const import (
    _CLASS_IN, _FLAGS_AA, _FLAGS_QR_QUERY, _FLAGS_QR_RESPONSE,
    _TYPE_A, _TYPE_SRV, _TYPE_TXT,
)

logger = logging.getLogger(__name__)

RECORD_TTL = 120  # seconds

TYPE_CODES = {'A': _TYPE_A, 'SRV': _TYPE_SRV, 'TXT': _TYPE_TXT}
TYPE_NAMES = {code: name for name, code in TYPE_CODES.items()}


@dataclass(frozen=True)
class SrvData:
    target: str
    port: int


@dataclass
class Question:
    type: str
    name: str


@dataclass
class Answer:
    """
    One record. ``data`` is ``SrvData`` for SRV, a list of byte strings
    for TXT and a dotted-quad string for A.
    """
    type: str
    name: str
    data: Any


@dataclass
class MDNSPacket:
    questions: List[Question] = field(default_factory=list)
    answers: List[Answer] = field(default_factory=list)


def _fqdn(name: str) -> str:
    return name if name.endswith('.') else name + '.'


def encode_txt(strings: List[bytes]) -> bytes:
    return b''.join(bytes([len(s)]) + s for s in strings)


def decode_txt(data: bytes) -> List[bytes]:
    strings = []
    offset = 0
    while offset < len(data):
        length = data[offset]
        strings.append(data[offset + 1:offset + 1 + length])
        offset += 1 + length
    return strings


def _to_record(answer: Answer):
    name = _fqdn(answer.name)
    if answer.type == 'SRV':
        return DNSService(
            name, _TYPE_SRV, _CLASS_IN, RECORD_TTL,
            0, 0, answer.data.port, _fqdn(answer.data.target),
        )
    if answer.type == 'TXT':
        return DNSText(name, _TYPE_TXT, _CLASS_IN, RECORD_TTL, encode_txt(answer.data))
    if answer.type == 'A':
        return DNSAddress(name, _TYPE_A, _CLASS_IN, RECORD_TTL, socket.inet_aton(answer.data))
    raise ValueError(f"Unsupported record type: {answer.type}")


def _from_record(record) -> Optional[Answer]:
    name = record.name.rstrip('.')
    if isinstance(record, DNSService):
        return Answer('SRV', name, SrvData(record.server.rstrip('.'), record.port))
    if isinstance(record, DNSText):
        return Answer('TXT', name, decode_txt(record.text))
    if isinstance(record, DNSAddress) and record.type == _TYPE_A:
        return Answer('A', name, socket.inet_ntoa(record.address))
    return None


def encode(packet: MDNSPacket, response: bool) -> List[bytes]:
    """Encode a query (questions plus known answers) or a response."""
    flags = _FLAGS_QR_RESPONSE | _FLAGS_AA if response else _FLAGS_QR_QUERY
    out = DNSOutgoing(flags, True)
    for question in packet.questions:
        out.add_question(DNSQuestion(_fqdn(question.name), TYPE_CODES[question.type], _CLASS_IN))
    for answer in packet.answers:
        out.add_answer_at_time(_to_record(answer), 0)
    return out.packets()


def decode(data: bytes):
    """
    Decode a datagram.

    Returns:
        ``(is_response, MDNSPacket)``, or None for malformed packets
    """
    incoming = DNSIncoming(data)
    if not incoming.valid:
        return None

    packet = MDNSPacket()
    for question in incoming.questions:
        type_name = TYPE_NAMES.get(question.type)
        if type_name:
            packet.questions.append(Question(type_name, question.name.rstrip('.')))

    for record in incoming.answers():
        answer = _from_record(record)
        if answer is not None:
            packet.answers.append(answer)

    return incoming.is_response(), packet
