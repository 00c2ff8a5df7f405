"""
Learner profile persistence.

Provides the profile store boundary the engine reads and writes through:
- ProfileStore protocol (get / create / save / exists)
- InMemoryProfileStore for tests and single-process use
- JsonProfileStore writing one validated JSON file per learner

Both stores hand out the same LearnerProfile instance for a learner id, so
every caller shares that profile's lock.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable

from loguru import logger

from ..errors import ProfileNotFound
from ..models.learner_profile import LearnerProfile


@runtime_checkable
class ProfileStore(Protocol):
    def get(self, learner_id: str) -> LearnerProfile:
        ...

    def create(self, profile: LearnerProfile) -> LearnerProfile:
        ...

    def save(self, profile: LearnerProfile) -> None:
        ...

    def exists(self, learner_id: str) -> bool:
        ...


class InMemoryProfileStore:
    """Profiles kept in a dict keyed by learner id."""

    def __init__(self):
        self._profiles: Dict[str, LearnerProfile] = {}
        self._lock = threading.Lock()
        self.save_count = 0

    def get(self, learner_id: str) -> LearnerProfile:
        """
        Raises:
            ProfileNotFound: If no profile exists for the id
        """
        profile = self._profiles.get(learner_id)
        if profile is None:
            raise ProfileNotFound(learner_id)
        return profile

    def create(self, profile: LearnerProfile) -> LearnerProfile:
        """
        Raises:
            ValueError: If a profile with the same id already exists
        """
        with self._lock:
            if profile.learner_id in self._profiles:
                raise ValueError(f"Learner profile {profile.learner_id} already exists")
            self._profiles[profile.learner_id] = profile
        logger.debug(f"Created learner profile {profile.learner_id}")
        return profile

    def save(self, profile: LearnerProfile) -> None:
        with self._lock:
            self._profiles[profile.learner_id] = profile
            self.save_count += 1

    def exists(self, learner_id: str) -> bool:
        return learner_id in self._profiles

    def list_learner_ids(self) -> List[str]:
        return sorted(self._profiles)


class JsonProfileStore:
    """
    One JSON file per learner under a profiles directory.

    Features:
    - Profiles validated against learner_profile.schema.json on save and load
    - Atomic writes (temp file then rename)
    - Loaded profiles cached so a learner id maps to one instance
    """

    def __init__(self, profiles_dir: Optional[Path | str] = None):
        """
        Initialize the store.

        Args:
            profiles_dir: Directory holding profile files (default: config.paths.profiles_dir)
        """
        if profiles_dir is None:
            from ..config import config

            profiles_dir = config.paths.profiles_dir
        self.profiles_dir = Path(profiles_dir)
        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, LearnerProfile] = {}
        self._lock = threading.Lock()

    def _path_for(self, learner_id: str) -> Path:
        return self.profiles_dir / f"{learner_id}.json"

    def get(self, learner_id: str) -> LearnerProfile:
        """
        Load a profile (from cache when already loaded).

        Raises:
            ProfileNotFound: If no file exists for the id
            ValidationError: If the stored document is invalid
        """
        with self._lock:
            cached = self._cache.get(learner_id)
            if cached is not None:
                return cached
            filepath = self._path_for(learner_id)
            if not filepath.exists():
                raise ProfileNotFound(learner_id)
            profile = LearnerProfile.load(filepath)
            self._cache[learner_id] = profile
            logger.debug(f"Loaded learner profile {learner_id} from {filepath}")
            return profile

    def create(self, profile: LearnerProfile) -> LearnerProfile:
        """
        Persist a new profile.

        Raises:
            ValueError: If a profile with the same id already exists
        """
        with self._lock:
            if profile.learner_id in self._cache or self._path_for(profile.learner_id).exists():
                raise ValueError(f"Learner profile {profile.learner_id} already exists")
            profile.save(self._path_for(profile.learner_id))
            self._cache[profile.learner_id] = profile
        logger.info(f"Created learner profile {profile.learner_id}")
        return profile

    def save(self, profile: LearnerProfile) -> None:
        """
        Write a profile to disk (validated first).

        Raises:
            ValidationError: If the profile is invalid
            OSError: If the file cannot be written
        """
        filepath = profile.save(self._path_for(profile.learner_id))
        with self._lock:
            self._cache[profile.learner_id] = profile
        logger.debug(f"Saved learner profile {profile.learner_id} to {filepath}")

    def exists(self, learner_id: str) -> bool:
        return learner_id in self._cache or self._path_for(learner_id).exists()

    def list_learner_ids(self) -> List[str]:
        return sorted(p.stem for p in self.profiles_dir.glob("*.json"))
