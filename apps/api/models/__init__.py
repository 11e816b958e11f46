"""Models package."""

from .user import User
from .asset import MediaAsset
