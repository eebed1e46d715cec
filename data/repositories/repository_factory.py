"""Builds the ledger's storage backend from a type name or from settings."""

from __future__ import annotations

import inspect
from typing import Dict, List, Type, TYPE_CHECKING
import logging

from .base_repository import BaseRepository
from .csv_repository import CSVRepository
from .json_repository import JSONRepository
from .memory_repository import InMemoryRepository

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)


class RepositoryFactory:
    """Registry of storage backends keyed by type name.

    Settings sections carry options for every backend side by side, so
    ``create_repository`` passes each class only the keyword arguments its
    constructor declares.
    """

    _repositories: Dict[str, Type[BaseRepository]] = {
        'json': JSONRepository,
        'csv': CSVRepository,
        'memory': InMemoryRepository,
    }

    @classmethod
    def create_repository(cls, repository_type: str = 'json', **kwargs) -> BaseRepository:
        """Instantiate the backend registered as ``repository_type``.

        Raises:
            ValueError: If the type is not registered or its constructor
                rejects the options
        """
        repository_class = cls._repositories.get(repository_type)
        if repository_class is None:
            raise ValueError(
                f"Unsupported repository type: {repository_type}. "
                f"Available types: {cls.get_available_types()}"
            )

        accepted = inspect.signature(repository_class.__init__).parameters
        options = {k: v for k, v in kwargs.items() if k in accepted and k != 'self'}
        dropped = sorted(set(kwargs) - set(options))
        if dropped:
            logger.debug(f"Ignoring options {dropped} for {repository_type} repository")

        logger.info(f"Creating {repository_type} repository with args: {options}")
        try:
            return repository_class(**options)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to create {repository_type} repository: {e}")
            raise ValueError(f"Cannot create {repository_type} repository: {e}") from e

    @classmethod
    def register_repository(cls, name: str, repository_class: type) -> None:
        """Register an additional backend under ``name``."""
        if not (inspect.isclass(repository_class) and issubclass(repository_class, BaseRepository)):
            raise ValueError(f"{repository_class!r} does not implement BaseRepository")
        cls._repositories[name] = repository_class
        logger.info(f"Registered repository type: {name}")

    @classmethod
    def get_available_types(cls) -> List[str]:
        return sorted(cls._repositories)


def create_repository_from_settings(settings: Settings) -> BaseRepository:
    """Create the repository selected by ``repository.type``.

    The CSV backend also records the display currency and default exchange
    rate in the metadata line of every file it writes.
    """
    options = settings.get_repository_config()
    repository_type = options.pop('type')
    if repository_type == 'csv':
        options.setdefault('display_currency', settings.get_display_currency())
        options.setdefault('exchange_rate', settings.get('currency.default_exchange_rate'))
    return RepositoryFactory.create_repository(repository_type, **options)
