"""Registry of live sessions and shadow repositories, keyed by container id."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from shadowtree.relay import Session
    from shadowtree.shadow_repo import ShadowRepository

log = logging.getLogger("shadowtree.registry")


class SessionRegistry:
    """Owns the session and shadow repository maps.

    The relay is the only writer of sessions and the orchestrator the only
    writer of shadow repositories; both receive the same registry.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._shadow_repos: dict[str, ShadowRepository] = {}

    # Sessions

    def get_session(self, container_id: str) -> Optional[Session]:
        return self._sessions.get(container_id)

    def add_session(self, container_id: str, session: Session) -> None:
        if container_id in self._sessions:
            raise KeyError(f"Session already exists for container {container_id[:12]}")
        self._sessions[container_id] = session

    def remove_session(self, container_id: str) -> Optional[Session]:
        return self._sessions.pop(container_id, None)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    # Shadow repositories

    def get_shadow_repo(self, container_id: str) -> Optional[ShadowRepository]:
        return self._shadow_repos.get(container_id)

    def get_or_create_shadow_repo(
        self,
        container_id: str,
        factory: Callable[[], ShadowRepository],
    ) -> tuple[ShadowRepository, bool]:
        """Return the container's shadow repository, creating it if absent.

        Returns:
            (repository, created)
        """
        repo = self._shadow_repos.get(container_id)
        if repo is not None:
            return repo, False
        repo = factory()
        self._shadow_repos[container_id] = repo
        log.debug("Registered shadow repository for %s", container_id[:12])
        return repo, True

    def remove_shadow_repo(self, container_id: str) -> Optional[ShadowRepository]:
        return self._shadow_repos.pop(container_id, None)

    def shadow_repos(self) -> list[ShadowRepository]:
        return list(self._shadow_repos.values())
