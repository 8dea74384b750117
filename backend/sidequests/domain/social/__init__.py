"""Social domain exports."""

from .graph import PostgresSocialGraph, SocialGraph, are_connected  # noqa: F401
from .models import Friendship, FriendshipStatus, Profile  # noqa: F401
from .profiles import PostgresProfileDirectory, ProfileDirectory  # noqa: F401
