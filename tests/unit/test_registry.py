"""Tests for the session/shadow repository registry."""

from unittest.mock import Mock

import pytest

from shadowtree.registry import SessionRegistry


class TestSessions:
    def test_add_get_remove(self) -> None:
        registry = SessionRegistry()
        session = Mock()

        registry.add_session("abc", session)

        assert registry.get_session("abc") is session
        assert registry.sessions() == [session]
        assert registry.remove_session("abc") is session
        assert registry.get_session("abc") is None
        assert registry.remove_session("abc") is None

    def test_at_most_one_session_per_container(self) -> None:
        registry = SessionRegistry()
        registry.add_session("abc", Mock())

        with pytest.raises(KeyError):
            registry.add_session("abc", Mock())


class TestShadowRepos:
    def test_factory_only_called_when_absent(self) -> None:
        registry = SessionRegistry()
        repo = Mock()
        factory = Mock(return_value=repo)

        first, created = registry.get_or_create_shadow_repo("abc", factory)
        second, created_again = registry.get_or_create_shadow_repo("abc", factory)

        assert first is second is repo
        assert (created, created_again) == (True, False)
        factory.assert_called_once_with()

    def test_remove(self) -> None:
        registry = SessionRegistry()
        registry.get_or_create_shadow_repo("abc", Mock)

        assert registry.remove_shadow_repo("abc") is not None
        assert registry.get_shadow_repo("abc") is None
        assert registry.shadow_repos() == []
