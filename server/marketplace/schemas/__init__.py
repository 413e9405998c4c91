"""Pydantic schemas for request/response validation."""

from .common import *  # noqa: F403
from .escrow import *  # noqa: F403
from .fees import *  # noqa: F403
from .functions import *  # noqa: F403
from .health import *  # noqa: F403
from .inventory import *  # noqa: F403
from .recurring import *  # noqa: F403
from .refunds import *  # noqa: F403
from .shipping import *  # noqa: F403
