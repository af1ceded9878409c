"""Exception hierarchy for the feed relay bot."""


class FeedRelayError(Exception):
    """Base class for all feed relay errors."""


class FetchError(FeedRelayError):
    """Raised when a feed cannot be downloaded or parsed."""


class DeliveryError(FeedRelayError):
    """Raised when a message cannot be delivered to a chat."""


class DuplicateSubscription(FeedRelayError):
    """Raised when a chat is already subscribed to a feed."""


class NotFound(FeedRelayError):
    """Raised when a subscription does not exist for the given chat."""


class StorageError(FeedRelayError):
    """Raised when a write to the persistent store cannot be confirmed."""
