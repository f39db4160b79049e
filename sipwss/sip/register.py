"""SIP REGISTER request builder for registrations over WebSocket (:rfc:`7118`)."""

from __future__ import annotations

import uuid
from dataclasses import field as dataclass_field
from typing import TYPE_CHECKING

from frozendict import frozendict
from typing_extensions import Self

from sipwss.constants import (
    DEFAULT_REGISTER_EXPIRES,
    SIP_ALLOWED_METHODS,
    SIP_BRANCH_MAGIC_COOKIE,
    SIP_MAX_FORWARDS,
    SIP_SUPPORTED_OPTIONS,
)
from sipwss.helpers import random_token, slots_dataclass
from sipwss.structures import SIPURI, SIPAddress

from .messages import CSeq, SIPMethod, build_request


if TYPE_CHECKING:
    from sipwss.config import RegistrationConfig


__all__ = [
    "REGISTER_CSEQ",
    "RegisterBuilder",
    "generate_local_host",
    "generate_contact_user",
    "generate_call_id",
    "generate_tag",
    "generate_branch",
]


REGISTER_CSEQ: CSeq = CSeq(number=1, method=SIPMethod.REGISTER.value)


def generate_local_host() -> str:
    """Generate the pseudo host name used for Via and Contact (:rfc:`7118#section-5.2`)."""
    return f"{random_token(12)}.invalid"


def generate_contact_user() -> str:
    return random_token(8)


def generate_call_id() -> str:
    """Generate a unique call ID for the registration."""
    return random_token(22)


def generate_tag() -> str:
    """Generate a tag for From/To headers."""
    return random_token(10)


def generate_branch() -> str:
    """Generate a unique branch identifier for Via headers, with the RFC 3261 cookie."""
    return SIP_BRANCH_MAGIC_COOKIE + random_token(9)


@slots_dataclass(frozen=True)
class RegisterBuilder:
    """
    Builder for a single SIP REGISTER request.

    The per-session identifiers (local host, contact user, call ID, from tag and
    branch) are randomly generated unless explicitly given.

    :param agent_id: The user part of the address-of-record.
    :param domain: The SIP domain, used for the request URI and the address-of-record.
    :param user_agent: The ``User-Agent`` header value.
    :param instance_id: The device instance UUID for ``+sip.instance``.
    :param expires: The requested registration lease, in seconds.
    :param reg_id: The outbound ``reg-id`` Contact parameter.
    :param sip_ice: Whether to add the ``+sip.ice`` Contact parameter.
    """

    agent_id: str
    domain: str
    user_agent: str
    instance_id: uuid.UUID
    expires: int = DEFAULT_REGISTER_EXPIRES
    reg_id: int = 1
    sip_ice: bool = True

    local_host: str = dataclass_field(default_factory=generate_local_host)
    contact_user: str = dataclass_field(default_factory=generate_contact_user)
    call_id: str = dataclass_field(default_factory=generate_call_id)
    from_tag: str = dataclass_field(default_factory=generate_tag)
    branch: str = dataclass_field(default_factory=generate_branch)

    @classmethod
    def from_config(cls, config: RegistrationConfig) -> Self:
        """Create a builder for the given configuration, with fresh identifiers."""
        return cls(
            agent_id=config.agent_id,
            domain=config.domain,
            user_agent=config.user_agent,
            instance_id=config.instance_id,
            expires=config.expires,
            reg_id=config.reg_id,
            sip_ice=config.sip_ice,
        )

    @property
    def request_uri(self) -> SIPURI:
        return SIPURI(host=self.domain)

    @property
    def aor(self) -> SIPURI:
        """The address-of-record being registered."""
        return SIPURI(host=self.domain, user=self.agent_id)

    @property
    def contact(self) -> str:
        """The Contact header value, with the outbound and instance parameters."""
        contact_uri = SIPURI(
            host=self.local_host,
            user=self.contact_user,
            params=frozendict(transport="wss"),
        )
        contact: str = contact_uri.serialize(force_brackets=True)
        if self.sip_ice:
            contact += ";+sip.ice"
        contact += f";reg-id={self.reg_id}"
        contact += f';+sip.instance="<urn:uuid:{str(self.instance_id).lower()}>"'
        contact += f";expires={self.expires}"
        return contact

    def headers(self) -> list[tuple[str, str]]:
        """The REGISTER headers, in order, excluding ``Content-Length``."""
        from_address = SIPAddress(uri=self.aor, display_name=self.agent_id)
        return [
            ("Via", f"SIP/2.0/WSS {self.local_host};branch={self.branch}"),
            ("Max-Forwards", str(SIP_MAX_FORWARDS)),
            ("To", self.aor.serialize(force_brackets=True)),
            ("From", f"{from_address};tag={self.from_tag}"),
            ("Call-ID", self.call_id),
            ("CSeq", str(REGISTER_CSEQ)),
            ("Contact", self.contact),
            ("Expires", str(self.expires)),
            ("Allow", ",".join(SIP_ALLOWED_METHODS)),
            ("Supported", ",".join(SIP_SUPPORTED_OPTIONS)),
            ("User-Agent", self.user_agent),
        ]

    def build(self) -> str:
        """Build the REGISTER request text."""
        return build_request(SIPMethod.REGISTER, self.request_uri, self.headers())
