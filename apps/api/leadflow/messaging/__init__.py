from leadflow.messaging.client import (
    HttpMessagingClient,
    MessagingClient,
    MessagingError,
    StubMessagingClient,
    build_messaging_client,
)

__all__ = [
    "HttpMessagingClient",
    "MessagingClient",
    "MessagingError",
    "StubMessagingClient",
    "build_messaging_client",
]
