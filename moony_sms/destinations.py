"""
Destination policies for sandbox and simulator traffic.

A policy decides where an outbound message actually goes, independent of
which provider sends it:

- ``IdentityPolicy``: send where asked (production).
- ``RedirectToSimulatorPolicy``: replace real numbers with a fixed simulator
  destination (local development against the AWS sandbox).
- ``RejectNonSimulatorPolicy``: refuse real numbers (sandbox without 10DLC).
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from moony_sms.exceptions import ConfigurationError
from moony_sms.utils.logger import get_logger
from moony_sms.utils.phone import mask_phone

logger = get_logger("destinations")

SIMULATOR_ORIGINATION_NUMBERS = frozenset({"+12065559457", "+12065559453"})
SIMULATOR_DESTINATION_NUMBERS = frozenset(
    {
        "+14254147755",
        "+14254147156",
        "+14254147266",
        "+14254147489",
        "+14254147499",
        "+14254147511",
        "+14254147600",
        "+14254147633",
        "+14254147654",
        "+14254147688",
    }
)

SANDBOX_REJECTION = "Cannot send to real numbers in sandbox mode without 10DLC"


def is_simulator_number(phone_number: str) -> bool:
    return phone_number in SIMULATOR_ORIGINATION_NUMBERS or phone_number in SIMULATOR_DESTINATION_NUMBERS


@dataclass(frozen=True)
class Destination:
    number: str
    rejected: Optional[str] = None
    redirected_from: Optional[str] = None


class DestinationPolicy(Protocol):
    def resolve(self, to: str) -> Destination:
        ...


class IdentityPolicy:
    def resolve(self, to: str) -> Destination:
        return Destination(to)


class RedirectToSimulatorPolicy:
    def __init__(self, simulator_number: str):
        if not is_simulator_number(simulator_number):
            raise ConfigurationError(f"{simulator_number} is not a simulator number")
        self.simulator_number = simulator_number

    def resolve(self, to: str) -> Destination:
        if is_simulator_number(to):
            return Destination(to)
        logger.info(
            "destinations.redirected",
            extra={"original": mask_phone(to), "override": self.simulator_number},
        )
        return Destination(self.simulator_number, redirected_from=to)


class RejectNonSimulatorPolicy:
    def resolve(self, to: str) -> Destination:
        if is_simulator_number(to):
            return Destination(to)
        return Destination(to, rejected=SANDBOX_REJECTION)


def build_destination_policy(name: str, simulator_number: str) -> DestinationPolicy:
    if name == "identity":
        return IdentityPolicy()
    if name == "redirect":
        return RedirectToSimulatorPolicy(simulator_number)
    if name == "reject":
        return RejectNonSimulatorPolicy()
    raise ConfigurationError(f"Unknown destination policy '{name}'")
