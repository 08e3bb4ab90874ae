"""Filter and mapping engine.

Decides whether a normalized message is forwarded and where to.
"""

import logging
import re
from collections.abc import Iterable
from datetime import datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from chatrelay.relay.exceptions import ConfigurationError
from chatrelay.relay.models import (
    ChannelMapping,
    Destination,
    Direction,
    EvaluationResult,
    MessageFilter,
    NormalizedMessage,
)

logger = logging.getLogger(__name__)


def validate_mappings(mappings: Iterable[ChannelMapping]) -> None:
    """Reject mappings that disagree about a (channel, direction) pair.

    Raises:
        ConfigurationError: If two mappings are authoritative for the same leg
    """
    seen: dict[tuple[Direction, str], ChannelMapping] = {}
    for mapping in mappings:
        for direction, source, _ in mapping.legs():
            leg = (direction, source)
            if leg in seen:
                raise ConfigurationError(
                    f"Duplicate channel mapping for {source} ({direction.value}): "
                    f"'{seen[leg]}' and '{mapping}'"
                )
            seen[leg] = mapping


def _matches_channel(rule: str, message: NormalizedMessage) -> bool:
    rule = rule.lstrip("#")
    if rule == message.source_channel_id:
        return True
    name = message.source_channel_name
    return bool(name) and rule.lower() == name.lstrip("#").lower()


def _matches_user(rule: str, message: NormalizedMessage) -> bool:
    if rule == message.sender_id:
        return True
    name = message.sender_name
    return bool(name) and rule.lower() == name.lower()


class FilterEngine:
    """Applies filters, then channel mappings, to a message.

    Filters run in a fixed order and the first rule that rejects a message
    stops evaluation: channel exclude, channel include (or, without an
    include list, the shared channel switch), user exclude, user include,
    pattern exclude, pattern include, keyword exclude, mute window.
    """

    def __init__(self, timezone: str = "Asia/Tokyo"):
        """Initialize the engine.

        Args:
            timezone: IANA zone the mute window is expressed in
        """
        self._zone = ZoneInfo(timezone)

    def evaluate(
        self,
        message: NormalizedMessage,
        filters: Optional[MessageFilter],
        mappings: list[ChannelMapping],
        default_destination: Optional[Destination] = None,
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        """Decide whether and where to forward a message.

        Args:
            message: The inbound message
            filters: Filtering rules (None allows everything)
            mappings: Channel mappings, first match wins
            default_destination: Used when no mapping matches
            now: Current time (defaults to the wall clock)

        Returns:
            The evaluation result
        """
        if filters is not None:
            reason = self.check_filters(message, filters, now)
            if reason:
                logger.debug(f"Filtered {message}: {reason}")
                return EvaluationResult.drop(reason)

        destinations = self.find_destinations(message, mappings)
        if destinations:
            return EvaluationResult(forward=True, destinations=destinations)

        if default_destination is not None:
            return EvaluationResult(forward=True, destinations=[default_destination])

        logger.debug(f"No mapping or default destination for {message}")
        return EvaluationResult.drop("no mapping")

    def check_filters(
        self,
        message: NormalizedMessage,
        filters: MessageFilter,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Run the filter chain.

        Returns:
            The name of the rule that rejected the message, or None
        """
        if any(_matches_channel(rule, message) for rule in filters.exclude_channels):
            return "channel excluded"
        if filters.include_channels and not any(
            _matches_channel(rule, message) for rule in filters.include_channels
        ):
            return "channel not included"
        if (
            not filters.include_channels
            and message.is_shared_channel
            and not filters.include_shared_channels
        ):
            return "shared channel excluded"

        if message.sender_id in filters.exclude_user_ids or any(
            _matches_user(rule, message) for rule in filters.exclude_users
        ):
            return "user excluded"
        if filters.include_users and not any(
            _matches_user(rule, message) for rule in filters.include_users
        ):
            return "user not included"

        if any(re.search(pattern, message.text) for pattern in filters.exclude_patterns):
            return "pattern excluded"
        if filters.include_patterns and not any(
            re.search(pattern, message.text) for pattern in filters.include_patterns
        ):
            return "pattern not included"

        lowered = message.text.lower()
        if any(keyword and keyword.lower() in lowered for keyword in filters.exclude_keywords):
            return "keyword excluded"

        if filters.mute_time_range.enabled and filters.mute_time_range.contains(
            self._local_time(now)
        ):
            return "muted"

        return None

    def find_destinations(
        self, message: NormalizedMessage, mappings: list[ChannelMapping]
    ) -> list[Destination]:
        """Destinations from the first mapping that matches the message."""
        direction = message.direction
        for mapping in mappings:
            if direction is Direction.SLACK_TO_LARK and not self._same_workspace(mapping, message):
                continue
            for leg_direction, source, dest in mapping.legs():
                if leg_direction is direction and source == message.source_channel_id:
                    return [
                        Destination(
                            platform=message.source_platform.other,
                            channel_id=dest,
                            workspace_id=(
                                mapping.workspace_id
                                if direction is Direction.LARK_TO_SLACK
                                else None
                            ),
                        )
                    ]
        return []

    @staticmethod
    def _same_workspace(mapping: ChannelMapping, message: NormalizedMessage) -> bool:
        if not mapping.workspace_id or not message.workspace_id:
            return True
        return mapping.workspace_id == message.workspace_id

    def _local_time(self, now: Optional[datetime]) -> time:
        if now is None:
            return datetime.now(self._zone).time()
        if now.tzinfo is not None:
            return now.astimezone(self._zone).time()
        return now.time()
