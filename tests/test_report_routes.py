from fastapi.testclient import TestClient

from embed_gateway.config import Settings
from embed_gateway.errors import UpstreamError
from embed_gateway.main import create_app
from embed_gateway.services.identity_token_provider import IdentityTokenProvider
from embed_gateway.services.mail_delivery_service import DeliveryOrchestrator

REPORTS = [
    {"id": "r-sales", "name": "Sales", "embedUrl": "https://embed/sales", "datasetId": "d-sales"},
    {"id": "r-finance", "name": "Finance", "embedUrl": "https://embed/fin", "datasetId": "d-fin"},
]


class _FakeTokenProvider:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def get_token(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return "aad-token"


class _FakePowerBI:
    def __init__(self, reports=None):
        self.reports = list(reports if reports is not None else REPORTS)
        self.token_requests = []

    async def list_reports(self, access_token):
        assert access_token == "aad-token"
        return self.reports

    async def generate_embed_token(self, access_token, report_id, dataset_ids, user_identity=None):
        self.token_requests.append(
            {"report_id": report_id, "dataset_ids": dataset_ids, "user_identity": user_identity}
        )
        return {"token": "embed-token", "tokenId": "tok-1", "expiration": "2030-01-01T00:00:00Z"}


def _client(token_provider=None, powerbi=None, settings=None):
    app = create_app(
        settings or Settings(report_access_control={"Finance": ["admin"]}),
        delivery_orchestrator=DeliveryOrchestrator(),
        token_provider=token_provider or _FakeTokenProvider(),
        powerbi_service=powerbi or _FakePowerBI(),
    )
    return TestClient(app)


def test_reports_filtered_by_roles():
    client = _client()

    viewer = client.post(
        "/api/reports",
        json={"userIdentity": {"email": "viewer@example.com", "roles": ["viewer"]}},
    )
    admin = client.post(
        "/reports",
        json={"userIdentity": {"email": "admin@example.com", "roles": ["admin"]}},
    )

    assert viewer.status_code == 200
    assert [r["name"] for r in viewer.json()["reports"]] == ["Sales"]
    assert viewer.json()["userInfo"] == {"email": "viewer@example.com", "roles": ["viewer"]}

    admin_reports = admin.json()["reports"]
    assert [r["name"] for r in admin_reports] == ["Sales", "Finance"]
    assert admin_reports[1]["allowedRoles"] == ["admin"]
    assert admin_reports[1]["datasetId"] == "d-fin"


def test_reports_require_user_email():
    response = _client().post("/reports", json={"userIdentity": {"roles": ["viewer"]}})
    assert response.status_code == 400
    assert response.json()["errorCode"] == "InputInvalid"
    assert response.json()["error"] == "User identity is required"


def test_embed_token_passes_identity_for_rls():
    powerbi = _FakePowerBI()
    client = _client(powerbi=powerbi)

    response = client.post(
        "/embed-token",
        json={
            "reportId": "r-sales",
            "datasetId": "d-sales",
            "userIdentity": {"email": "a@example.com", "username": "a@example.com", "roles": ["Sales"]},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["embedToken"] == "embed-token"
    assert body["tokenId"] == "tok-1"
    assert body["rlsBypassed"] is False
    request = powerbi.token_requests[0]
    assert request["dataset_ids"] == ["d-sales"]
    assert request["user_identity"]["username"] == "a@example.com"


def test_embed_token_bypass_rls_drops_identity():
    powerbi = _FakePowerBI()
    client = _client(powerbi=powerbi)

    response = client.post(
        "/embed-token",
        json={
            "reportId": "r-sales",
            "datasetId": "d-sales",
            "userIdentity": {"username": "a@example.com"},
            "bypassRLS": True,
        },
    )

    assert response.status_code == 200
    assert response.json()["rlsBypassed"] is True
    assert powerbi.token_requests[0]["user_identity"] is None


def test_embed_token_requires_ids():
    response = _client().post("/embed-token", json={"reportId": "r-sales"})
    assert response.status_code == 400
    assert response.json()["error"] == "reportId and datasetId are required"


def test_embed_config_for_known_report():
    powerbi = _FakePowerBI()
    response = _client(powerbi=powerbi).post("/api/embed-config/r-finance", json={})

    assert response.status_code == 200
    body = response.json()
    assert body["reportId"] == "r-finance"
    assert body["reportName"] == "Finance"
    assert body["embedUrl"] == "https://embed/fin"
    assert body["expiration"] == "2030-01-01T00:00:00Z"
    assert powerbi.token_requests[0]["dataset_ids"] == ["d-fin"]


def test_embed_config_without_body():
    response = _client().post("/embed-config/r-sales")
    assert response.status_code == 200
    assert response.json()["reportId"] == "r-sales"


def test_embed_config_unknown_report():
    response = _client().post("/embed-config/missing", json={})
    assert response.status_code == 404
    assert response.json()["errorCode"] == "ReportNotFound"


def test_upstream_failure_maps_to_bad_gateway():
    provider = _FakeTokenProvider(error=UpstreamError("Failed to obtain access token: AADSTS7000215"))
    response = _client(token_provider=provider).post(
        "/reports",
        json={"userIdentity": {"email": "a@example.com"}},
    )

    assert response.status_code == 502
    body = response.json()
    assert body["errorCode"] == "UpstreamFailure"
    assert "AADSTS7000215" in body["error"]


def test_missing_bi_credentials_is_service_not_configured():
    settings = Settings()
    client = _client(token_provider=IdentityTokenProvider.from_settings(settings), settings=settings)

    response = client.post("/reports", json={"userIdentity": {"email": "a@example.com"}})

    assert response.status_code == 503
    body = response.json()
    assert body["errorCode"] == "ServiceNotConfigured"
    assert "SP_CLIENT_SECRET" in body["error"]
