"""Advertisement-to-device matching.

Matchers run in a fixed order (address, then name, then service id) and
each gives a definite answer. The first matcher that finds exactly one
candidate wins. A heuristic matcher that finds several candidates stops the
search with an ambiguity error instead of guessing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum, auto

from ilinkbridge.exceptions import DeviceSelectionError
from ilinkbridge.models.records import Advertisement, DeviceConfig
from ilinkbridge.protocol.constants import ProtocolConstants, uuid_matches

logger = logging.getLogger(__name__)


class MatchOutcome(Enum):
    MATCH = auto()
    NO_MATCH = auto()
    AMBIGUOUS = auto()


@dataclass(frozen=True)
class MatchResult:
    outcome: MatchOutcome
    advertisement: Advertisement | None = None
    candidates: tuple[Advertisement, ...] = ()

    @classmethod
    def from_candidates(cls, candidates: Sequence[Advertisement]) -> MatchResult:
        if not candidates:
            return cls(MatchOutcome.NO_MATCH)
        if len(candidates) == 1:
            return cls(MatchOutcome.MATCH, advertisement=candidates[0])
        return cls(MatchOutcome.AMBIGUOUS, candidates=tuple(candidates))


def normalize_address(address: str) -> str:
    """Lowercase an address and drop ':' and '-' separators."""
    return address.lower().replace(":", "").replace("-", "")


class AddressMatcher:
    name = "address"

    def match(self, config: DeviceConfig, adverts: Sequence[Advertisement]) -> MatchResult:
        target = normalize_address(config.address)
        for advert in adverts:
            if normalize_address(advert.address) == target:
                return MatchResult(MatchOutcome.MATCH, advertisement=advert)
        return MatchResult(MatchOutcome.NO_MATCH)


class NameMatcher:
    name = "name"

    def match(self, config: DeviceConfig, adverts: Sequence[Advertisement]) -> MatchResult:
        if not config.name:
            return MatchResult(MatchOutcome.NO_MATCH)
        wanted = config.name.lower()
        return MatchResult.from_candidates([a for a in adverts if a.name.lower() == wanted])


class ServiceMatcher:
    name = "service"

    def __init__(self, service_uuid: str = ProtocolConstants.SERVICE_UUID) -> None:
        self.service_uuid = service_uuid

    def match(self, config: DeviceConfig, adverts: Sequence[Advertisement]) -> MatchResult:
        return MatchResult.from_candidates(
            [
                a
                for a in adverts
                if any(uuid_matches(uuid, self.service_uuid) for uuid in a.service_uuids)
            ]
        )


DEFAULT_MATCHERS = (AddressMatcher(), NameMatcher(), ServiceMatcher())


def resolve_advertisement(
    config: DeviceConfig,
    adverts: Sequence[Advertisement],
    matchers: Iterable = DEFAULT_MATCHERS,
    claimed: Iterable[str] = (),
) -> Advertisement | None:
    """
    Find the advertisement for ``config``.

    Args:
        config: Device to resolve.
        adverts: Scan results.
        matchers: Matchers evaluated in order.
        claimed: Addresses owned by other configured devices; skipped by
            every matcher after the address matcher.

    Returns:
        The matching advertisement, or None if no matcher found one.

    Raises:
        DeviceSelectionError: If a matcher finds more than one candidate.
    """
    claimed_keys = {normalize_address(address) for address in claimed}
    for position, matcher in enumerate(matchers):
        pool = adverts
        if position > 0 and claimed_keys:
            pool = [a for a in adverts if normalize_address(a.address) not in claimed_keys]

        result = matcher.match(config, pool)
        if result.outcome is MatchOutcome.MATCH:
            logger.debug(
                "Matched %s to %s by %s", config.id, result.advertisement.address, matcher.name
            )
            return result.advertisement
        if result.outcome is MatchOutcome.AMBIGUOUS:
            raise DeviceSelectionError(config.id, [a.address for a in result.candidates])
    return None


def resolve_all(
    configs: Sequence[DeviceConfig],
    adverts: Sequence[Advertisement],
    matchers: Iterable = DEFAULT_MATCHERS,
) -> tuple[dict[str, Advertisement], dict[str, DeviceSelectionError]]:
    """
    Resolve every configured device against one scan.

    Returns:
        Tuple of (resolved advertisements by device id, ambiguity errors by
        device id). Devices in neither map were not found.
    """
    matchers = tuple(matchers)
    resolved: dict[str, Advertisement] = {}
    errors: dict[str, DeviceSelectionError] = {}
    for config in configs:
        claimed = [other.address for other in configs if other.id != config.id]
        claimed += [advert.address for advert in resolved.values()]
        try:
            advert = resolve_advertisement(config, adverts, matchers, claimed)
        except DeviceSelectionError as exc:
            logger.error("%s", exc)
            errors[config.id] = exc
            continue
        if advert is not None:
            resolved[config.id] = advert
    return resolved, errors
