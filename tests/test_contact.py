"""Tests for the contact form, the security log endpoint and health check."""

from database import CONTACTS, SECURITY_LOGS

CONTACT = {
    "name": "Abebe Kebede",
    "email": "abebe@example.com",
    "phone": "+251911000000",
    "message": "Do you ship to Hawassa?",
}


def test_health(api_client):
    assert api_client.get("/").json() == {"name": "Storefront API", "status": "ok"}


class TestContact:
    def test_create_contact(self, api_client, db):
        response = api_client.post("/api/contact", json=CONTACT)
        assert response.status_code == 201
        stored = db[CONTACTS].find_one()
        assert stored["email"] == "abebe@example.com"
        assert stored["message"] == "Do you ship to Hawassa?"
        assert "createdAt" in stored

    def test_invalid_email(self, api_client, db):
        response = api_client.post("/api/contact", json=dict(CONTACT, email="not-an-email"))
        assert response.status_code == 400
        assert response.json()["errors"][0]["loc"] == ["body", "email"]
        assert db[CONTACTS].count_documents({}) == 0

    def test_missing_message(self, api_client):
        payload = {k: v for k, v in CONTACT.items() if k != "message"}
        assert api_client.post("/api/contact", json=payload).status_code == 400

    def test_contacts_listed_for_owner(self, api_client, owner_headers):
        api_client.post("/api/contact", json=CONTACT)
        contacts = api_client.get("/api/superadmin/contacts", headers=owner_headers).json()
        assert [c["name"] for c in contacts] == ["Abebe Kebede"]

    def test_contacts_hidden_from_public(self, api_client):
        assert api_client.get("/api/superadmin/contacts").status_code == 401


class TestSecurityLog:
    def test_log_is_stored_unconditionally(self, api_client, db, clock):
        response = api_client.post("/api/security/log", json={"reason": "Too many API calls"})
        assert response.status_code == 201
        entry = db[SECURITY_LOGS].find_one()
        assert entry["reason"] == "Too many API calls"
        assert entry["timestamp"].replace(tzinfo=None) == clock().replace(tzinfo=None)

    def test_reason_required(self, api_client):
        assert api_client.post("/api/security/log", json={"reason": ""}).status_code == 400
