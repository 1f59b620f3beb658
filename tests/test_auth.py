import pytest

from auth import NOT_AN_ADMIN, AdminAuth, AuthError, pwd_context


@pytest.mark.asyncio
async def test_sign_up_registers_admin_and_signs_in(store):
    auth = AdminAuth(store)
    session = await auth.sign_up("admin@example.com", "secret123")
    assert await store.get("admins", session.account_id) is not None
    assert await auth.current_session(session.token) == session


@pytest.mark.asyncio
async def test_duplicate_sign_up_rejected(store):
    auth = AdminAuth(store)
    await auth.sign_up("admin@example.com", "secret123")
    with pytest.raises(AuthError) as err:
        await auth.sign_up("admin@example.com", "another1")
    assert err.value.status_code == 400


@pytest.mark.asyncio
async def test_sign_in_checks_password(store):
    auth = AdminAuth(store)
    await auth.sign_up("admin@example.com", "secret123")
    session = await auth.sign_in("admin@example.com", "secret123")
    assert session.email == "admin@example.com"
    with pytest.raises(AuthError) as err:
        await auth.sign_in("admin@example.com", "wrong-pass")
    assert err.value.status_code == 401
    with pytest.raises(AuthError):
        await auth.sign_in("nobody@example.com", "secret123")


@pytest.mark.asyncio
async def test_non_admin_is_signed_out(store):
    await store.create("accounts", {"email": "customer@example.com", "password_hash": pwd_context.hash("secret123")})
    auth = AdminAuth(store)
    events = []
    auth.on_auth_state_change(events.append)

    with pytest.raises(AuthError) as err:
        await auth.sign_in("customer@example.com", "secret123")
    assert err.value.status_code == 403
    assert err.value.message == NOT_AN_ADMIN
    assert await store.get_once("sessions") == []
    assert events == [None]


@pytest.mark.asyncio
async def test_auth_state_listeners(store):
    auth = AdminAuth(store)
    events = []
    unsubscribe = auth.on_auth_state_change(events.append)

    session = await auth.sign_up("admin@example.com", "secret123")
    assert await auth.sign_out(session.token) is True
    assert await auth.current_session(session.token) is None
    assert events == [session, None]

    unsubscribe()
    await auth.sign_in("admin@example.com", "secret123")
    assert len(events) == 2
    assert await auth.sign_out("unknown-token") is False
