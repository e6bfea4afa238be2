# tests/unit/core/test_authorizer.py — v1
"""Tests for core/authorizer.py."""

from __future__ import annotations

import pytest

from deploygate.core.authorizer import AllowListAuthorizer
from deploygate.core.errors import AuthorizationError


class TestAllowListAuthorizer:
    def test_open_policy_accepts_any_identity(self):
        auth = AllowListAuthorizer()
        assert auth.can_approve("alice", "prod")
        assert not auth.can_approve("  ", "prod")

    def test_global_allow_list(self):
        auth = AllowListAuthorizer(approvers=["alice"])
        assert auth.can_approve("alice", "prod")
        assert not auth.can_approve("mallory", "prod")

    def test_per_target_list_takes_precedence(self):
        auth = AllowListAuthorizer(approvers=["alice"], approvers_by_target={"prod": ["bob"]})
        assert auth.can_approve("bob", "prod")
        assert not auth.can_approve("alice", "prod")
        assert auth.can_approve("alice", "staging")

    def test_lockable_targets(self):
        auth = AllowListAuthorizer(targets=["staging"])
        assert auth.can_lock(1, "staging")
        assert not auth.can_lock(1, "prod")
        assert AllowListAuthorizer().can_lock(1, "anything")

    def test_require_raises(self):
        auth = AllowListAuthorizer(approvers=["alice"], targets=["staging"])
        with pytest.raises(AuthorizationError) as exc_info:
            auth.require_approver("mallory", "prod")
        assert exc_info.value.details == {"approver": "mallory", "target": "prod"}
        with pytest.raises(AuthorizationError):
            auth.require_lock(5, "prod")
