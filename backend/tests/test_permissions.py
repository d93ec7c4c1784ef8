from datetime import datetime, timedelta, timezone

import pytest

from fellowship.models import Permission, PermissionCondition, UserProfile
from fellowship.services.permission_audit import PermissionAudit
from fellowship.services.permissions import (
    PermissionMatrix,
    PermissionMatrixError,
    can_create_post,
    can_delete_comment,
    can_delete_post,
    can_edit_post,
    can_manage_files,
    can_view_users,
    validate_permissions,
)


def _user(user_id="u1", role="member", approved=True):
    now = datetime.now(timezone.utc).isoformat()
    return UserProfile(
        id=user_id,
        email=f"{user_id}@fellowship.test",
        name=user_id,
        role=role,
        is_approved=approved,
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def matrix():
    return PermissionMatrix(audit=PermissionAudit(max_entries=100))


@pytest.mark.parametrize(
    "role,resource,action,expected",
    [
        ("member", "post", "create", True),
        ("member", "post", "moderate", False),
        ("member", "event", "create", False),
        ("leader", "event", "create", True),
        ("leader", "user", "read", True),
        ("leader", "user", "manage", False),
        ("admin", "system", "manage", True),
        ("admin", "file", "manage", True),
    ],
)
def test_role_matrix(matrix, role, resource, action, expected):
    assert matrix.has_permission(role, resource, action) is expected


def test_unknown_role_has_no_permissions(matrix):
    assert matrix.role_permissions("guest") == []
    assert not matrix.has_permission("guest", "post", "read")


def test_custom_grant_and_revoke(matrix):
    admin = _user("admin1", role="admin")
    grant = Permission(resource="event", action="create")
    matrix.add_custom_permission("m1", grant, actor=admin)
    assert matrix.has_permission("member", "event", "create", user_id="m1")
    assert not matrix.has_permission("member", "event", "create", user_id="m2")

    matrix.remove_custom_permission("m1", grant, actor=admin)
    assert not matrix.has_permission("member", "event", "create", user_id="m1")
    with pytest.raises(PermissionMatrixError):
        matrix.remove_custom_permission("m1", grant, actor=admin)

    types = [row.type for row in matrix.audit.get_audit_logs()]
    assert "permission_granted" in types
    assert "permission_revoked" in types


def test_conditional_permissions(matrix):
    admin = _user("admin1", role="admin")
    owner_only = Permission(
        resource="post",
        action="update",
        conditions=[PermissionCondition(type="ownership", value="m1")],
    )
    matrix.add_custom_permission("m1", owner_only, actor=admin)
    assert matrix.has_permission("member", "post", "update", context={"user_id": "m1"}, user_id="m1")
    assert not matrix.has_permission("member", "post", "update", context={"user_id": "m9"}, user_id="m1")

    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    after_launch = Permission(
        resource="file",
        action="delete",
        conditions=[PermissionCondition(type="time", operator="greater_than", value=past)],
    )
    matrix.add_custom_permission("m1", after_launch, actor=admin)
    assert matrix.has_permission("member", "file", "delete", user_id="m1")

    bad_time = Permission(
        resource="file",
        action="update",
        conditions=[PermissionCondition(type="time", operator="greater_than", value="not-a-date")],
    )
    matrix.add_custom_permission("m1", bad_time, actor=admin)
    assert not matrix.has_permission("member", "file", "update", user_id="m1")


def test_groups_assign_permissions(matrix):
    admin = _user("admin1", role="admin")
    group = matrix.create_permission_group(
        name="Worship team",
        description="Can publish worship events",
        permissions=[Permission(resource="event", action="create")],
        actor=admin,
    )
    assert matrix.list_groups() == [group]
    matrix.assign_user_to_group("m5", group.id, actor=admin)
    assert matrix.has_permission("member", "event", "create", user_id="m5")
    with pytest.raises(PermissionMatrixError):
        matrix.assign_user_to_group("m5", "group_missing", actor=admin)

    user_permissions = matrix.get_user_permissions("m5", "member")
    assert Permission(resource="event", action="create") in user_permissions


def test_validate_permissions_accepts_known_pairs():
    ok, errors = validate_permissions([Permission(resource="post", action="read")])
    assert ok and errors == []


def test_post_helpers():
    member = _user("m1")
    leader = _user("l1", role="leader")
    admin = _user("a1", role="admin")
    pending = _user("p1", approved=False)

    assert can_create_post(member, "free")
    assert not can_create_post(member, "notice")
    assert can_create_post(leader, "notice")
    assert not can_create_post(pending, "free")

    assert can_edit_post(member, "m1")
    assert not can_edit_post(leader, "m1")
    assert can_edit_post(admin, "m1")

    assert can_delete_post(member, "m1")
    assert not can_delete_post(leader, "m1")
    assert can_delete_post(admin, "m1")


def test_comment_and_admin_helpers():
    member = _user("m1")
    leader = _user("l1", role="leader")
    admin = _user("a1", role="admin")

    assert can_delete_comment(member, "m1")
    assert not can_delete_comment(member, "m2")
    assert can_delete_comment(leader, "m2")

    assert not can_view_users(member)
    assert can_view_users(leader)
    assert not can_manage_files(leader)
    assert can_manage_files(admin)
