# parksense_gateway/storage/factory.py
import logging
from typing import Optional

from .repository_interface import SlotRepository

logger = logging.getLogger(__name__)


class RepositoryFactory:
    @staticmethod
    def create_repository(repository_type: str = "memory", supabase_url: Optional[str] = None,
                          supabase_key: Optional[str] = None, poll_interval: float = 5.0) -> SlotRepository:
        """Create repository instance based on configuration"""
        if repository_type.lower() == "supabase":
            if not supabase_url or not supabase_key:
                raise ValueError("Supabase repository requires SUPABASE_URL and SUPABASE_KEY")
            from .supabase_repository import SupabaseSlotRepository
            logger.info(f"Using Supabase repository at {supabase_url}")
            return SupabaseSlotRepository(supabase_url, supabase_key, poll_interval=poll_interval)

        if repository_type.lower() == "memory":
            from .memory_repository import MemorySlotRepository
            logger.info("Using in-memory repository")
            return MemorySlotRepository()

        raise ValueError(f"Unsupported repository type: {repository_type}")
