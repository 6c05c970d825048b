"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - jobs reference identity_user
from fatural.modules.identity.models import User  # noqa: F401

from fatural.modules.extraction.models import ExtractionCacheEntry  # noqa: F401
from fatural.modules.jobs.models import Job  # noqa: F401
