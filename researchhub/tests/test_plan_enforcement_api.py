"""HTTP tests for /api/plan-enforcement, including the 402 envelope."""

from researchhub.features.usage.service import update_usage

URL = "/api/plan-enforcement"


def test_free_user_at_study_limit_gets_402(client, auth_headers):
    for _ in range(3):
        update_usage("r1", "create-study")

    resp = client.post(
        URL,
        params={"action": "check"},
        headers=auth_headers("r1", role="researcher"),
        json={"checkAction": "create-study"},
    )

    assert resp.status_code == 402
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "plan_limit_exceeded"
    assert body["error"] == "Plan upgrade required"
    assert body["planLimitExceeded"] is True
    assert body["request_id"] == resp.headers["x-request-id"]
    details = body["details"]
    assert details["reason"] == "Study limit exceeded"
    assert details["currentPlan"] == "free"
    assert details["requiredPlan"] == "basic"
    assert details["currentUsage"] == 3
    assert details["planLimit"] == 3
    assert details["upgradeMessage"] == "Upgrade to basic to create more studies"
    assert details["planFeatures"]["id"] == "free"


def test_check_passes_and_record_usage_increments(client, auth_headers):
    headers = auth_headers("r1", role="researcher")
    resp = client.post(URL, params={"action": "check"}, headers=headers, json={"checkAction": "create-study"})
    assert resp.status_code == 200
    assert resp.json()["data"]["allowed"] is True

    resp = client.post(URL, params={"action": "record-usage"}, headers=headers, json={"usageAction": "create-study"})
    assert resp.status_code == 200
    assert resp.json()["data"]["usage"]["studiesCreated"] == 1


def test_check_passes_action_data_through(client, auth_headers):
    resp = client.post(
        URL,
        params={"action": "check"},
        headers=auth_headers("r1", role="researcher"),
        json={"checkAction": "add-participant", "currentParticipants": 10},
    )
    assert resp.status_code == 402
    assert resp.json()["details"]["planLimit"] == 10


def test_check_requires_check_action(client, auth_headers):
    resp = client.post(URL, params={"action": "check"}, headers=auth_headers("r1"), json={})
    assert resp.status_code == 400
    assert "checkAction" in resp.json()["error"]


def test_admin_assigns_plan_and_limits_follow(client, auth_headers):
    admin = auth_headers("a1", role="admin")
    resp = client.post(URL, params={"action": "assign-plan"}, headers=admin, json={"userId": "r1", "planId": "pro"})
    assert resp.status_code == 200
    assert resp.json()["data"]["subscription"]["planId"] == "pro"

    resp = client.post(
        URL,
        params={"action": "check"},
        headers=auth_headers("r1", role="researcher"),
        json={"checkAction": "team-collaboration"},
    )
    assert resp.status_code == 200

    resp = client.get(URL, params={"action": "usage"}, headers=auth_headers("r1", role="researcher"))
    assert resp.json()["data"]["plan"]["id"] == "pro"


def test_assign_plan_rejects_unknown_plan(client, auth_headers):
    resp = client.post(
        URL, params={"action": "assign-plan"}, headers=auth_headers("a1", role="admin"),
        json={"userId": "r1", "planId": "platinum"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_plan"


def test_reset_usage_is_admin_only(client, auth_headers):
    update_usage("r1", "create-study")
    assert client.post(
        URL, params={"action": "reset-usage"}, headers=auth_headers("r1", role="researcher"), json={"userId": "r1"}
    ).status_code == 403

    resp = client.post(URL, params={"action": "reset-usage"}, headers=auth_headers("a1", role="admin"), json={"userId": "r1"})
    assert resp.status_code == 200
    assert resp.json()["data"]["usage"]["studiesCreated"] == 0


def test_usage_wrong_method(client, auth_headers):
    resp = client.post(URL, params={"action": "usage"}, headers=auth_headers("r1"))
    assert resp.status_code == 405


def test_fractional_estimated_minutes_is_400(client, auth_headers):
    resp = client.post(
        URL,
        params={"action": "check"},
        headers=auth_headers("r1", role="researcher"),
        json={"checkAction": "record-session", "estimatedMinutes": 2.5},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "estimatedMinutes must be a non-negative whole number"
