import re
from datetime import timedelta

from conftest import register, PASSWORD
from auth import hash_password, verify_password
from models import AuthSession, utcnow


class TestPasswords:
    def test_roundtrip(self):
        stored = hash_password("hunter22")
        assert stored.startswith("pbkdf2$")
        assert verify_password(stored, "hunter22")
        assert not verify_password(stored, "hunter23")

    def test_garbage_hash_never_verifies(self):
        assert not verify_password("not-a-hash", "x")


class TestRegisterLogin:
    def test_register_defaults(self, client):
        _, user = register(client, "New@Example.com", name="  New  ")
        assert user["email"] == "new@example.com"
        assert user["name"] == "New"
        assert user["role"] == "user"
        assert user["status"] == "En espera"
        assert user["vip_level"] == 0
        assert user["balance"] == 0
        assert re.fullmatch(r"REF\d{6}", user["referral_code"])

    def test_duplicate_email(self, client, alice):
        r = client.post("/auth/register", json={"name": "A", "email": "alice@example.com", "password": PASSWORD})
        assert r.status_code == 400

    def test_login_errors(self, client, alice):
        r = client.post("/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})
        assert (r.status_code, r.json()["detail"]) == (401, "Usuario no registrado")
        r = client.post("/auth/login", json={"email": "alice@example.com", "password": "wrong"})
        assert (r.status_code, r.json()["detail"]) == (401, "Error de Contraseña")

    def test_login_and_logout(self, client, alice):
        token = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD}).json()["token"]
        headers = {"Authorization": f"Bearer {token}"}
        assert client.get("/auth/me", headers=headers).json()["user"]["email"] == "alice@example.com"
        assert client.post("/auth/logout", headers=headers).status_code == 200
        assert client.get("/auth/me", headers=headers).status_code == 401

    def test_expired_session_rejected(self, client, alice, db):
        s = db.query(AuthSession).first()
        s.expires_at = utcnow() - timedelta(minutes=1)
        db.commit()
        assert client.get("/auth/me", headers=alice[0]).status_code == 401
        assert db.query(AuthSession).count() == 0


class TestProfiles:
    def test_patch_only_touches_allowed_fields(self, client, alice):
        r = client.patch("/profiles/me", headers=alice[0], json={"name": "Alicia", "balance": 1e9, "role": "admin"})
        assert r.status_code == 200
        item = r.json()["item"]
        assert item["name"] == "Alicia"
        assert item["balance"] == 0
        assert item["role"] == "user"

    def test_blank_name_rejected(self, client, alice):
        assert client.patch("/profiles/me", headers=alice[0], json={"name": "   "}).status_code == 400

    def test_avatar_upload_and_delete(self, client, alice):
        r = client.post("/profiles/me/avatar", headers=alice[0],
                        files={"file": ("me.jpg", b"\xff\xd8jpeg", "image/jpeg")})
        assert r.status_code == 200, r.text
        url = r.json()["avatar_url"]
        assert client.get("/profiles/me", headers=alice[0]).json()["item"]["avatar_url"] == url
        assert client.get(url).content == b"\xff\xd8jpeg"

        client.post("/profiles/me/avatar", headers=alice[0], files={"file": ("b.png", b"png", "image/png")})
        photos = client.get("/profiles/me/photos", headers=alice[0]).json()["items"]
        assert [p["is_active"] for p in photos] == [True, False]

        assert client.delete(f"/profiles/me/photos/{photos[1]['id']}", headers=alice[0]).status_code == 200
        assert client.get(url).status_code == 404
        assert len(client.get("/profiles/me/photos", headers=alice[0]).json()["items"]) == 1

    def test_avatar_extension_ignores_client_filename(self, client, alice):
        r = client.post("/profiles/me/avatar", headers=alice[0],
                        files={"file": ("x.html", b"<script>alert(1)</script>", "image/png")})
        assert r.status_code == 200, r.text
        url = r.json()["avatar_url"]
        assert url.endswith(".png")
        assert client.get(url).headers["content-type"] == "image/png"

    def test_avatar_rejects_pdf_and_oversize(self, client, alice, monkeypatch):
        r = client.post("/profiles/me/avatar", headers=alice[0],
                        files={"file": ("a.pdf", b"%PDF", "application/pdf")})
        assert r.status_code == 400
        import profiles
        monkeypatch.setattr(profiles, "MAX_AVATAR_BYTES", 3)
        r = client.post("/profiles/me/avatar", headers=alice[0],
                        files={"file": ("a.png", b"1234", "image/png")})
        assert r.status_code == 400

    def test_admin_profiles(self, client, admin, alice):
        assert len(client.get("/admin/profiles", headers=admin[0]).json()["items"]) == 2
        assert client.get("/admin/profiles", headers=alice[0]).status_code == 403


class TestRoles:
    def test_role_of_caller(self, client, admin, alice):
        assert client.get("/roles/me", headers=admin[0]).json()["is_admin"] is True
        assert client.get("/roles/me", headers=alice[0]).json()["is_admin"] is False

    def test_grant_and_revoke_by_email(self, client, admin, alice):
        assert client.post("/admin/roles/by-email", headers=admin[0],
                           json={"email": "ALICE@example.com"}).status_code == 200
        admins = {a["email"] for a in client.get("/admin/admins", headers=admin[0]).json()["items"]}
        assert admins == {"admin@example.com", "alice@example.com"}
        assert client.post("/admin/roles/by-email", headers=admin[0],
                           json={"email": "alice@example.com"}).status_code == 409

        assert client.delete("/admin/roles/by-email/alice@example.com", headers=admin[0]).status_code == 200
        assert client.get("/roles/me", headers=alice[0]).json()["is_admin"] is False

    def test_cannot_change_own_role(self, client, admin):
        assert client.put(f"/admin/roles/{admin[1]['id']}", headers=admin[0], json={"role": "user"}).status_code == 400
        assert client.delete("/admin/roles/by-email/admin@example.com", headers=admin[0]).status_code == 400

    def test_set_role_by_id(self, client, admin, alice):
        r = client.put(f"/admin/roles/{alice[1]['id']}", headers=admin[0], json={"role": "admin"})
        assert r.json()["item"]["role"] == "admin"
        assert len(client.get("/admin/roles", headers=admin[0]).json()["items"]) == 2
