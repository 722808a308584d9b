"""Alerts API tests."""

import pytest

from carewatch.services.subject_service import register_subject


@pytest.fixture
def subjects(store):
    mine = [register_subject(store, f"Mine {i:02d}", assignee_id="cm-1") for i in range(12)]
    other = register_subject(store, "Other", assignee_id="cm-2")
    loose = register_subject(store, "Loose")
    return {"mine": mine, "other": other, "loose": loose}


def _raise(client, headers, subject_id, alert_type="fall", severity="high"):
    response = client.post(
        "/alerts",
        json={"subject_id": subject_id, "type": alert_type, "severity": severity},
        headers=headers,
    )
    assert response.status_code == 200
    return response.json()


def test_create_alert(client, admin_headers, subjects):
    alert = _raise(client, admin_headers, subjects["other"]["id"], "panic_button", "critical")
    assert alert["type"] == "panic"
    assert alert["status"] == "active"
    assert alert["subject_name"] == "Other"

    fetched = client.get(f"/alerts/{alert['id']}", headers=admin_headers)
    assert fetched.status_code == 200
    assert fetched.json()["id"] == alert["id"]


def test_create_alert_for_unknown_subject(client, admin_headers):
    response = client.post("/alerts", json={"subject_id": "missing", "type": "fall"}, headers=admin_headers)
    assert response.status_code == 404


def test_get_missing_alert(client, admin_headers):
    assert client.get("/alerts/missing", headers=admin_headers).status_code == 404


def test_list_by_scope_spans_chunks(client, admin_headers, subjects):
    first = _raise(client, admin_headers, subjects["mine"][0]["id"])
    last = _raise(client, admin_headers, subjects["mine"][11]["id"])
    other = _raise(client, admin_headers, subjects["other"]["id"])
    loose = _raise(client, admin_headers, subjects["loose"]["id"])

    mine = client.get("/alerts", params={"scope": "cm-1"}, headers=admin_headers).json()
    assert {a["id"] for a in mine} == {first["id"], last["id"]}

    unassigned = client.get("/alerts", params={"scope": "unassigned"}, headers=admin_headers).json()
    assert [a["id"] for a in unassigned] == [loose["id"]]

    everything = client.get("/alerts", headers=admin_headers).json()
    assert {a["id"] for a in everything} == {first["id"], last["id"], other["id"], loose["id"]}

    nobody = client.get("/alerts", params={"scope": "cm-9"}, headers=admin_headers).json()
    assert nobody == []


def test_list_status_filter(client, admin_headers, subjects):
    active = _raise(client, admin_headers, subjects["other"]["id"])
    done = _raise(client, admin_headers, subjects["other"]["id"])
    client.post(f"/alerts/{done['id']}/resolve", json={"note": "ok"}, headers=admin_headers)

    response = client.get("/alerts", params={"status": "active"}, headers=admin_headers)
    assert [a["id"] for a in response.json()] == [active["id"]]
    assert client.get("/alerts", params={"status": "bogus"}, headers=admin_headers).status_code == 400


def test_resolve_scenario(client, manager_headers, subjects):
    alert = _raise(client, manager_headers, subjects["mine"][0]["id"])

    response = client.post(f"/alerts/{alert['id']}/resolve", json={"note": "false alarm"}, headers=manager_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "resolved"
    assert body["resolved_by"] == "cm-1"
    assert body["resolver_role"] == "caremanager"
    assert body["resolution_note"] == "false alarm"

    again = client.post(f"/alerts/{alert['id']}/resolve", headers=manager_headers)
    assert again.status_code == 409
    assert again.json()["detail"] == "Alert already resolved"


def test_resolve_without_body(client, admin_headers, subjects):
    alert = _raise(client, admin_headers, subjects["other"]["id"])
    response = client.post(f"/alerts/{alert['id']}/resolve", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["resolution_note"] is None


def test_close_as_false_alert(client, admin_headers, subjects):
    alert = _raise(client, admin_headers, subjects["other"]["id"])
    response = client.post(f"/alerts/{alert['id']}/close", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "closed"
    assert response.json()["action_taken"] == "closed_false_alert"


def test_forward_twice(client, manager_headers, subjects):
    alert = _raise(client, manager_headers, subjects["mine"][0]["id"])
    for expected in (1, 2):
        response = client.post(f"/alerts/{alert['id']}/forward", json={"target_id": "cm-2"}, headers=manager_headers)
        assert response.status_code == 200
        assert response.json()["forward_count"] == expected
        assert response.json()["status"] == "active"


def test_transition_on_missing_alert(client, admin_headers):
    assert client.post("/alerts/missing/close", headers=admin_headers).status_code == 404


def test_family_can_read_but_not_act(client, admin_headers, family_headers, subjects):
    alert = _raise(client, admin_headers, subjects["other"]["id"])
    assert client.get("/alerts", headers=family_headers).status_code == 200
    assert client.post(f"/alerts/{alert['id']}/resolve", headers=family_headers).status_code == 403
    assert client.post(f"/alerts/{alert['id']}/close", headers=family_headers).status_code == 403


def test_stats(client, admin_headers, subjects):
    first = _raise(client, admin_headers, subjects["other"]["id"])
    _raise(client, admin_headers, subjects["other"]["id"])
    client.post(f"/alerts/{first['id']}/close", headers=admin_headers)

    response = client.get("/alerts/stats", headers=admin_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["active"] == 1
    assert body["closed"] == 1
    assert body["resolved"] == 0
    assert len(body["recent_active"]) == 1
