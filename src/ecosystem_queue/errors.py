"""Domain exceptions raised by resolvers, executors and the provisioning saga."""

from __future__ import annotations


class EcosystemQueueError(RuntimeError):
    """Base class for domain errors."""


class EntityNotFound(EcosystemQueueError):
    """Chat id could not be resolved even after refreshing recent dialogs."""

    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Entity not found for chat_id={chat_id!r} (dialogs refreshed)")
        self.chat_id = chat_id


class TopicNotFound(EcosystemQueueError):
    def __init__(self, topic_name: str) -> None:
        super().__init__(f"Topic {topic_name!r} not found")
        self.topic_name = topic_name


class InvalidPayloadError(EcosystemQueueError):
    """Stored task payload does not match the schema of its task type."""


class DuplicateEcosystemError(EcosystemQueueError):
    """An ecosystem for the same address is already persisted."""


class ProvisioningError(EcosystemQueueError):
    """Platform response lacked data the provisioning saga depends on."""


class SecretMismatchError(EcosystemQueueError):
    """Dispatch trigger was called without the configured shared secret."""
