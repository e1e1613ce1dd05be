"""Development settings; production deployments use ``settings.production``."""

from .base import *  # noqa: F401,F403
