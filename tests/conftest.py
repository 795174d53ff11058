import pytest
from werkzeug.security import generate_password_hash

from app.procurement import create_app
from app.procurement.db import ENGINE_KEY, session_scope
from app.procurement.models import Base, Role, User
from app.procurement.modules.organization.models import Department
from scripts.init_db import seed_only

PASSWORD = "pw"

# email -> (role key, department name)
USERS = {
    "requester@example.com": ("requester", "IT"),
    "manager@example.com": ("unit_manager", "IT"),
    "buyer@example.com": ("purchasing", None),
    "finance@example.com": ("finance", None),
    "warehouse@example.com": ("warehouse", None),
    "other@example.com": ("requester", "Finance"),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'test.db'}"
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("RATELIMIT_ENABLED", "0")
    monkeypatch.setenv("ADMIN_EMAIL", "admin@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", PASSWORD)
    for k in ("SMTP_SERVER", "S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions[ENGINE_KEY])
    seed_only(database_url=db_url)

    with session_scope(app) as s:
        depts = {name: Department(name=name, email=f"{name.lower()}@example.com") for name in ("IT", "Finance")}
        s.add_all(depts.values())
        s.flush()
        roles = {r.key: r for r in s.query(Role).all()}
        for email, (role_key, dept_name) in USERS.items():
            u = User(
                email=email,
                password_hash=generate_password_hash(PASSWORD),
                is_active=True,
                full_name=email.split("@")[0].title(),
                department_id=depts[dept_name].id if dept_name else None,
            )
            u.roles.append(roles[role_key])
            s.add(u)
    return app


class ApiClient:
    """Test client logged in as one user; sends the CSRF header on writes."""

    def __init__(self, client, csrf_token: str):
        self.client = client
        self.csrf_token = csrf_token

    def get(self, url, **kwargs):
        return self.client.get(url, **kwargs)

    def _write(self, method, url, json=None, **kwargs):
        headers = {"X-CSRF-Token": self.csrf_token, **kwargs.pop("headers", {})}
        if json is None and "data" not in kwargs:
            json = {}
        return getattr(self.client, method)(url, json=json, headers=headers, **kwargs)

    def post(self, url, json=None, **kwargs):
        return self._write("post", url, json, **kwargs)

    def patch(self, url, json=None, **kwargs):
        return self._write("patch", url, json, **kwargs)

    def put(self, url, json=None, **kwargs):
        return self._write("put", url, json, **kwargs)

    def delete(self, url, **kwargs):
        return self._write("delete", url, None, **kwargs)


def _login(client, email: str, password: str = PASSWORD):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)


@pytest.fixture()
def api_as(app):
    """Factory: api_as("buyer@example.com") -> logged-in ApiClient."""

    def _make(email: str) -> ApiClient:
        client = app.test_client()
        r = _login(client, email)
        assert r.status_code == 302
        token = client.get("/api/auth/csrf").json["csrf_token"]
        return ApiClient(client, token)

    return _make


@pytest.fixture()
def admin(api_as):
    return api_as("admin@example.com")


@pytest.fixture()
def buyer(api_as):
    return api_as("buyer@example.com")


@pytest.fixture()
def requester(api_as):
    return api_as("requester@example.com")


@pytest.fixture()
def manager(api_as):
    return api_as("manager@example.com")


@pytest.fixture()
def department_ids(app):
    with session_scope(app) as s:
        return {d.name: d.id for d in s.query(Department).all()}


@pytest.fixture()
def user_ids(app):
    with session_scope(app) as s:
        return {u.email: u.id for u in s.query(User).all()}


@pytest.fixture()
def login():
    return _login
