import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from access_service import schemas
from access_service.database import Base
from access_service.errors import Conflict, Forbidden, NotFound
from access_service.services.catalog import PermissionCatalog
from access_service.services.registry import RoleRegistry
from access_service.services.resolver import PrincipalResolver

from conftest import create_user


@pytest.fixture
async def permission_ids(session):
    catalog = PermissionCatalog(session)
    ids = {}
    for name in ["tickets.view", "tickets.update", "customers.view", "billing.view"]:
        resource, action = name.split(".")
        created = await catalog.create(schemas.PermissionCreate(name=name, resource=resource, action=action))
        ids[name] = created.id
    return ids


async def create_role(session, name, permission_ids=()):
    created = await RoleRegistry(session).create(schemas.RoleCreate(name=name, permission_ids=list(permission_ids)))
    return created.id


def names(role):
    return [p.name for p in role.permissions]


async def test_create_with_permissions_sorted_by_name(session, permission_ids):
    registry = RoleRegistry(session)

    role = await registry.create(schemas.RoleCreate(
        name="support",
        description="Helpdesk",
        permission_ids=[permission_ids["tickets.view"], permission_ids["billing.view"]],
    ))

    assert role.name == "support"
    assert names(role) == ["billing.view", "tickets.view"]
    assert [p.name for p in await registry.get_permissions(role.id)] == ["billing.view", "tickets.view"]


async def test_create_duplicate_name(session):
    await create_role(session, "support")

    with pytest.raises(Conflict) as exc:
        await create_role(session, "support")
    assert exc.value.code == Conflict.DUPLICATE_NAME


async def test_create_with_unknown_permission_writes_nothing(session, permission_ids):
    registry = RoleRegistry(session)

    with pytest.raises(NotFound):
        await registry.create(schemas.RoleCreate(name="support", permission_ids=[permission_ids["tickets.view"], 999]))

    page = await registry.list({"search": "support"})
    assert page.total == 0


async def test_update_replaces_permissions_wholesale(session, permission_ids):
    role_id = await create_role(session, "support", [permission_ids["tickets.view"], permission_ids["tickets.update"]])

    role = await RoleRegistry(session).update(
        role_id, schemas.RoleUpdate(permission_ids=[permission_ids["customers.view"]])
    )

    assert names(role) == ["customers.view"]


async def test_update_with_empty_list_clears_permissions(session, permission_ids):
    role_id = await create_role(session, "support", [permission_ids["tickets.view"]])

    role = await RoleRegistry(session).update(role_id, schemas.RoleUpdate(permission_ids=[]))

    assert names(role) == []


async def test_update_without_permission_ids_keeps_them(session, permission_ids):
    role_id = await create_role(session, "support", [permission_ids["tickets.view"]])

    role = await RoleRegistry(session).update(role_id, schemas.RoleUpdate(description="Helpdesk"))

    assert role.description == "Helpdesk"
    assert names(role) == ["tickets.view"]


async def test_update_with_unknown_permission_keeps_old_set(session, permission_ids):
    role_id = await create_role(session, "support", [permission_ids["tickets.view"]])
    registry = RoleRegistry(session)

    with pytest.raises(NotFound):
        await registry.update(role_id, schemas.RoleUpdate(name="helpdesk", permission_ids=[999]))

    role = await registry.get_with_permissions(role_id)
    assert role.name == "support"
    assert names(role) == ["tickets.view"]


async def test_rename_to_taken_name_conflicts(session):
    await create_role(session, "support")
    other_id = await create_role(session, "billing")

    with pytest.raises(Conflict):
        await RoleRegistry(session).update(other_id, schemas.RoleUpdate(name="support"))


async def test_rename_to_own_name_is_allowed(session):
    role_id = await create_role(session, "support")

    role = await RoleRegistry(session).update(role_id, schemas.RoleUpdate(name="support", description="x"))

    assert role.name == "support"


async def test_custom_role_cannot_take_system_name(session, seeded):
    role_id = await create_role(session, "support")

    with pytest.raises(Conflict):
        await RoleRegistry(session).update(role_id, schemas.RoleUpdate(name="admin"))


async def test_system_role_cannot_be_renamed(session, seeded):
    registry = RoleRegistry(session)
    staff_id = next(item.id for item in (await registry.list({"search": "staff"})).items if item.name == "staff")

    with pytest.raises(Forbidden):
        await registry.update(staff_id, schemas.RoleUpdate(name="support_staff"))


async def test_assign_is_idempotent(session, permission_ids):
    role_id = await create_role(session, "support", [permission_ids["tickets.view"]])
    registry = RoleRegistry(session)

    await registry.assign_permissions(role_id, [permission_ids["tickets.view"], permission_ids["billing.view"]])
    role = await registry.assign_permissions(role_id, [permission_ids["billing.view"]])

    assert names(role) == ["billing.view", "tickets.view"]


async def test_remove_absent_permission_is_noop(session, permission_ids):
    role_id = await create_role(session, "support", [permission_ids["tickets.view"], permission_ids["billing.view"]])
    registry = RoleRegistry(session)

    role = await registry.remove_permissions(role_id, [permission_ids["billing.view"], permission_ids["customers.view"]])

    assert names(role) == ["tickets.view"]


async def test_assign_to_unknown_role(session, permission_ids):
    with pytest.raises(NotFound):
        await RoleRegistry(session).assign_permissions(999, [permission_ids["tickets.view"]])


@pytest.mark.parametrize("system_name", ["admin", "staff", "customer"])
async def test_system_roles_cannot_be_deleted(session, system_name):
    role_id = await create_role(session, system_name)

    with pytest.raises(Forbidden) as exc:
        await RoleRegistry(session).delete(role_id)

    assert exc.value.code == Forbidden.SYSTEM_ROLE
    assert (await RoleRegistry(session).get_with_permissions(role_id)).name == system_name


async def test_delete_blocked_while_users_hold_role(session):
    role_id = await create_role(session, "support")
    await create_user(session, "alice", roles=["support"])
    await create_user(session, "bob", roles=["support"])
    registry = RoleRegistry(session)

    with pytest.raises(Conflict) as exc:
        await registry.delete(role_id)

    assert exc.value.code == Conflict.IN_USE
    assert exc.value.count == 2
    assert await registry.user_count(role_id) == 2


async def test_delete_removes_role_and_its_grants(session, permission_ids):
    role_id = await create_role(session, "support", [permission_ids["tickets.view"]])
    registry = RoleRegistry(session)

    await registry.delete(role_id)

    with pytest.raises(NotFound):
        await registry.get_with_permissions(role_id)
    assert await PermissionCatalog(session).role_count(permission_ids["tickets.view"]) == 0


async def test_list_counts_and_search(session, permission_ids):
    await create_role(session, "support", [permission_ids["tickets.view"], permission_ids["tickets.update"]])
    await create_role(session, "billing", [permission_ids["billing.view"]])
    await create_user(session, "alice", roles=["support"])

    page = await RoleRegistry(session).list()
    by_name = {item.name: item for item in page.items}

    assert page.total == 2
    assert by_name["support"].user_count == 1
    assert by_name["support"].permission_count == 2
    assert by_name["billing"].user_count == 0
    assert not by_name["support"].is_system

    searched = await RoleRegistry(session).list({"search": "bill"})
    assert [item.name for item in searched.items] == ["billing"]


async def test_stats(session, seeded):
    await create_role(session, "support")

    stats = await RoleRegistry(session).stats()

    assert stats["total_roles"] == 4
    assert stats["system_roles"] == 3
    assert stats["custom_roles"] == 1
    admin = next(detail for detail in stats["role_details"] if detail["name"] == "admin")
    assert admin["permission_count"] == 32


async def test_search_treats_wildcards_literally(session):
    await create_role(session, "billing")
    await create_role(session, "field_ops")

    page = await RoleRegistry(session).list({"search": "_"})

    assert [item.name for item in page.items] == ["field_ops"]


async def test_replace_is_never_seen_half_applied(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'access.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    first = {"tickets.view", "tickets.update"}
    second = {"customers.view", "billing.view"}
    observed = []
    done = asyncio.Event()

    try:
        async with factory() as session:
            catalog = PermissionCatalog(session)
            ids = {}
            for name in sorted(first | second):
                resource, action = name.split(".")
                created = await catalog.create(schemas.PermissionCreate(name=name, resource=resource, action=action))
                ids[name] = created.id
            role_id = await create_role(session, "support", [ids[name] for name in first])
            user_id = await create_user(session, "agent", roles=["support"])

        async def keep_resolving():
            while not done.is_set():
                async with factory() as session:
                    principal = await PrincipalResolver(session).resolve(user_id)
                observed.append(principal.permissions)
                await asyncio.sleep(0)

        reader = asyncio.create_task(keep_resolving())
        async with factory() as session:
            registry = RoleRegistry(session)
            for i in range(20):
                wanted = second if i % 2 == 0 else first
                await registry.update(role_id, schemas.RoleUpdate(permission_ids=[ids[name] for name in wanted]))
                await asyncio.sleep(0)
        done.set()
        await reader
    finally:
        await engine.dispose()

    assert observed
    assert frozenset() not in observed
    assert all(permissions in (first, second) for permissions in observed)
