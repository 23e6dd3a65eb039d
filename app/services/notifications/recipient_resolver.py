from datetime import datetime
from typing import Iterable, List, Set

from app.schemas.recipient_schemas import RecipientDescriptor, ResolvedRecipient
from app.services.notifications.directory import PreferenceStore, RecipientDirectory
from app.utils.errors import RecipientResolutionError
from app.utils.logging import get_logger

logger = get_logger()


class RecipientResolver:
    """
    Expands recipient descriptors into concrete users and the channels each one
    may be reached on.

    Resolution only reads from its collaborators, so it is safe to repeat for
    the same occurrence when a claim is retried.
    """

    def __init__(self, directory: RecipientDirectory, preferences: PreferenceStore):
        self.directory = directory
        self.preferences = preferences

    async def resolve(
        self,
        descriptors: Iterable[RecipientDescriptor],
        channels: Iterable[str],
        notification_type: str,
        as_of: datetime,
    ) -> List[ResolvedRecipient]:
        """
        Resolve descriptors as of an instant.

        Users are deduplicated across descriptors. Each user's channels are the
        requested channels they have not opted out of; users left with none are
        dropped. Results are ordered by user id.

        Raises:
            RecipientResolutionError: when the directory or preference store fails
        """
        requested = frozenset(channels)

        try:
            user_ids: Set[str] = set()
            for descriptor in descriptors:
                user_ids.update(await self.directory.expand(descriptor, as_of))

            resolved: List[ResolvedRecipient] = []
            for user_id in sorted(user_ids):
                allowed = requested & frozenset(
                    await self.preferences.allowed_channels(user_id, notification_type)
                )
                if not allowed:
                    logger.debug(
                        f"User {user_id} opted out of every requested channel for {notification_type}"
                    )
                    continue
                resolved.append(ResolvedRecipient(user_id=user_id, channels=allowed))

        except RecipientResolutionError:
            raise
        except Exception as e:
            logger.error(f"Recipient resolution failed: {e}")
            raise RecipientResolutionError(f"Failed to resolve recipients: {e}") from e

        return resolved
