"""
Request Handlers and Router

The broker's capability registry maps each supported api_key to a handler
and the version range it advertises. The Dispatcher routes a decoded
request header through the registry; api keys with no entry get the
minimal UNSUPPORTED_VERSION error frame and the connection stays open.

Supported requests:
  - ApiVersions (18, v0-4): reports the registry itself.
  - DescribeTopicPartitions (75, v0): describes the first requested topic
    through an injected topic lookup. The default lookup knows no topics.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List

from loguru import logger

from eventor.errors import UnsupportedApiKey
from eventor.protocol import (
    API_API_VERSIONS, API_DESCRIBE_TOPIC_PARTITIONS,
    ERROR_NONE, ERROR_UNSUPPORTED_VERSION,
    ApiDescriptor, RequestHeader, RequestParser, ResponseBuilder, TopicDescriptor,
)


# =========================================================================
#  Capability Registry
# =========================================================================

@dataclass(frozen=True)
class ApiHandler:
    """A registry entry: api key, advertised versions and the handler."""

    api_key: int
    min_version: int
    max_version: int
    handle: Callable[["Dispatcher", RequestHeader], bytes]

    @property
    def descriptor(self) -> ApiDescriptor:
        return ApiDescriptor(self.api_key, self.min_version, self.max_version)

    def supports(self, api_version: int) -> bool:
        return self.min_version <= api_version <= self.max_version


TopicLookup = Callable[[bytes], TopicDescriptor]


def unknown_topic(name: bytes) -> TopicDescriptor:
    """Default topic lookup: every topic is UNKNOWN_TOPIC_OR_PARTITION."""
    return TopicDescriptor(name=name)


# =========================================================================
#  Handlers
# =========================================================================

def handle_api_versions(dispatcher: "Dispatcher", header: RequestHeader) -> bytes:
    # The table is returned even when the requested version is unsupported.
    entry = dispatcher.lookup(API_API_VERSIONS)
    error_code = ERROR_NONE if entry.supports(header.api_version) else ERROR_UNSUPPORTED_VERSION
    return ResponseBuilder.api_versions(
        header.correlation_id, error_code, dispatcher.capabilities())


def handle_describe_topic_partitions(dispatcher: "Dispatcher", header: RequestHeader) -> bytes:
    name = RequestParser.parse_describe_topic_partitions(header.body)
    topic = dispatcher.topic_lookup(name)
    logger.debug("DescribeTopicPartitions topic={!r} error_code={}",
                 name.decode('utf-8', errors='replace'), topic.error_code)
    return ResponseBuilder.describe_topic_partitions(header.correlation_id, [topic])


DEFAULT_HANDLERS = (
    ApiHandler(API_API_VERSIONS, 0, 4, handle_api_versions),
    ApiHandler(API_DESCRIBE_TOPIC_PARTITIONS, 0, 0, handle_describe_topic_partitions),
)


# =========================================================================
#  Router
# =========================================================================

class Dispatcher:
    """Routes requests to registered handlers. Holds no per-request state."""

    def __init__(self, handlers: Iterable[ApiHandler] = DEFAULT_HANDLERS,
                 topic_lookup: TopicLookup = unknown_topic):
        self._handlers: Dict[int, ApiHandler] = {}
        for h in handlers:
            if h.api_key in self._handlers:
                raise ValueError(f"Duplicate handler for api_key {h.api_key}")
            self._handlers[h.api_key] = h
        self.topic_lookup = topic_lookup

    def capabilities(self) -> List[ApiDescriptor]:
        """Advertised API table, ordered by api key."""
        return [self._handlers[k].descriptor for k in sorted(self._handlers)]

    def lookup(self, api_key: int) -> ApiHandler:
        handler = self._handlers.get(api_key)
        if handler is None:
            raise UnsupportedApiKey(api_key)
        return handler

    def dispatch(self, header: RequestHeader) -> bytes:
        """Produce the complete response frame for one request."""
        try:
            handler = self.lookup(header.api_key)
        except UnsupportedApiKey as e:
            logger.warning("{} (correlation_id={}); answering with error frame",
                           e, header.correlation_id)
            return ResponseBuilder.unsupported_api_key(header.correlation_id)

        logger.debug("Dispatching {} v{} correlation_id={}",
                     header.api_name, header.api_version, header.correlation_id)
        return handler.handle(self, header)
