"""Database models"""

from truststars.models.activity_snapshot import ActivitySnapshot
from truststars.models.repository import Repository
from truststars.models.user import OwnershipLink, UserProfile

__all__ = [
    "ActivitySnapshot",
    "OwnershipLink",
    "Repository",
    "UserProfile",
]
