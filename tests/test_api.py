"""
HTTP-level tests: authentication, error mapping and end-to-end flows
"""

from datetime import datetime, timedelta


def _put_flag(client, headers, name, **fields):
    body = {"feature_name": name, "enabled": True, "rollout_percentage": 100}
    body.update(fields)
    return client.put("/flags", json=body, headers=headers)


def _create_experiment(client, headers, allocation, **fields):
    body = {
        "name": "Paywall copy",
        "variants": [{"name": n, "allocation": a} for n, a in allocation.items()],
    }
    body.update(fields)
    return client.post("/experiments", json=body, headers=headers)


def test_health_is_public(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_missing_token_is_rejected(client):
    response = client.get("/flags/dark_mode/evaluation/user-1")

    assert response.status_code == 401


def test_invalid_token_is_rejected(client):
    response = client.get(
        "/flags/dark_mode/evaluation/user-1", headers={"Authorization": "Bearer not-a-jwt"}
    )

    assert response.status_code == 401


def test_admin_routes_require_admin_role(client, user_headers):
    assert _put_flag(client, user_headers, "dark_mode").status_code == 403
    assert client.get("/experiments", headers=user_headers).status_code == 403
    assert client.post("/rollouts/execute", headers=user_headers).status_code == 403


def test_login(client):
    response = client.post("/auth/token", json={"username": "admin", "password": "admin123"})
    assert response.status_code == 200
    token = response.json()["access_token"]
    assert response.json()["role"] == "admin"

    listed = client.get("/flags", headers={"Authorization": f"Bearer {token}"})
    assert listed.status_code == 200

    bad = client.post("/auth/token", json={"username": "admin", "password": "wrong"})
    assert bad.status_code == 401


def test_parent_disabled_over_http(client, admin_headers, user_headers):
    assert _put_flag(client, admin_headers, "parent_feature", enabled=False).status_code == 200
    created = _put_flag(client, admin_headers, "child_feature", parent_feature="parent_feature")
    assert created.json()["parent_feature"] == "parent_feature"

    response = client.get("/flags/child_feature/evaluation/user-1", headers=user_headers)

    assert response.status_code == 200
    assert response.json() == {
        "feature_name": "child_feature",
        "enabled": False,
        "variant": None,
        "source": "parent_disabled",
    }


def test_unknown_flag_evaluates_as_not_found(client, user_headers):
    response = client.get("/flags/ghost/evaluation/user-1", headers=user_headers)

    assert response.status_code == 200
    assert response.json()["source"] == "not_found"
    assert response.json()["enabled"] is False


def test_batch_evaluation(client, admin_headers, user_headers):
    _put_flag(client, admin_headers, "dark_mode")
    _put_flag(client, admin_headers, "offline_mode", rollout_percentage=0)

    response = client.post(
        "/flags/evaluate",
        json={"user_id": "user-1", "feature_names": ["dark_mode", "offline_mode", "ghost"]},
        headers=user_headers,
    )

    results = response.json()["results"]
    assert results["dark_mode"]["enabled"] is True
    assert results["offline_mode"]["enabled"] is False
    assert results["ghost"]["source"] == "not_found"


def test_admin_errors_are_mapped(client, admin_headers):
    missing = client.get("/flags/ghost", headers=admin_headers)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Feature flag ghost not found"

    orphan = _put_flag(client, admin_headers, "orphan", parent_feature="ghost")
    assert orphan.status_code == 400

    invalid = _put_flag(client, admin_headers, "dark_mode", rollout_percentage=150)
    assert invalid.status_code == 422


def test_override_endpoints(client, admin_headers, user_headers):
    _put_flag(client, admin_headers, "beta_x", rollout_percentage=0)

    response = client.put(
        "/flags/beta_x/overrides",
        json={"user_id": "tester", "enabled": True, "variant": "v2", "reason": "QA"},
        headers=admin_headers,
    )
    assert response.status_code == 200

    evaluation = client.get("/flags/beta_x/evaluation/tester", headers=user_headers).json()
    assert evaluation["source"] == "override"
    assert evaluation["variant"] == "v2"

    assert client.delete("/flags/beta_x/overrides/tester", headers=admin_headers).status_code == 204
    assert client.delete("/flags/beta_x/overrides/tester", headers=admin_headers).status_code == 404


def test_toggle_with_children_endpoint(client, admin_headers):
    _put_flag(client, admin_headers, "friend_system", enabled=False)
    _put_flag(client, admin_headers, "social_hub", enabled=False)
    _put_flag(client, admin_headers, "leaderboards", enabled=False, parent_feature="social_hub")
    _put_flag(client, admin_headers, "social_challenges", enabled=False, parent_feature="social_hub")

    response = client.post(
        "/flags/social_hub/toggle-with-children", json={"enabled": True}, headers=admin_headers
    )

    assert response.status_code == 200
    body = response.json()
    assert body["updated"] == ["social_hub", "leaderboards"]
    assert [f["feature_name"] for f in body["failed"]] == ["social_challenges"]
    assert client.get("/flags/leaderboards", headers=admin_headers).json()["enabled"] is True


def test_catalog_endpoints(client, admin_headers):
    items = client.get("/flags/catalog", headers=admin_headers).json()
    dark_mode = next(item for item in items if item["name"] == "dark_mode")
    assert dark_mode["category"] == "ui_features"
    assert dark_mode["category_label"] == "UI Features"

    seeded = client.post("/flags/catalog/seed", headers=admin_headers)
    assert seeded.status_code == 200
    assert len(seeded.json()) == len(items)

    unknown = client.post("/flags/catalog/ghost", headers=admin_headers)
    assert unknown.status_code == 404


def test_start_rejects_bad_allocation(client, admin_headers):
    created = _create_experiment(client, admin_headers, {"control": 50, "treatment": 47})
    assert created.status_code == 201
    assert created.json()["status"] == "draft"

    response = client.post(f"/experiments/{created.json()['id']}/start", headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "allocation sums to 97, expected 100"


def test_experiment_flow(client, admin_headers, user_headers):
    experiment_id = _create_experiment(
        client, admin_headers, {"control": 50, "treatment": 50}
    ).json()["id"]
    started = client.post(f"/experiments/{experiment_id}/start", headers=admin_headers)
    assert started.json()["status"] == "running"

    first = client.get(f"/experiments/{experiment_id}/assignment/user-42", headers=user_headers).json()
    second = client.get(f"/experiments/{experiment_id}/assignment/user-42", headers=user_headers).json()
    assert first["variant"] == second["variant"]
    assert first["is_new_assignment"] is True
    assert second["is_new_assignment"] is False

    conversion = {"user_id": "user-42", "event_type": "conversion"}
    recorded = client.post(f"/experiments/{experiment_id}/conversions", json=conversion, headers=user_headers)
    retried = client.post(f"/experiments/{experiment_id}/conversions", json=conversion, headers=user_headers)
    assert recorded.status_code == 201
    assert recorded.json()["recorded"] is True
    assert recorded.json()["variant"] == first["variant"]
    assert retried.json()["recorded"] is False

    stats = client.get(f"/experiments/{experiment_id}/statistics", headers=admin_headers).json()
    by_variant = {v["variant"]: v for v in stats["variants"]}
    assert by_variant[first["variant"]]["participant_count"] == 1
    assert by_variant[first["variant"]]["conversion_count"] == 1

    winner = client.post(f"/experiments/{experiment_id}/winner", headers=admin_headers).json()
    assert winner["winning_variant"] is None

    paused = client.post(f"/experiments/{experiment_id}/pause", headers=admin_headers)
    assert paused.json()["status"] == "paused"
    newcomer = client.get(f"/experiments/{experiment_id}/assignment/newcomer", headers=user_headers).json()
    assert newcomer["variant"] == "control"
    assert newcomer["is_persisted"] is False

    assignments = client.get(f"/experiments/{experiment_id}/assignments", headers=admin_headers).json()
    assert assignments["total"] == 1


def test_conversion_for_unknown_experiment(client, user_headers):
    response = client.post(
        "/experiments/999/conversions",
        json={"user_id": "user-1", "event_type": "conversion"},
        headers=user_headers,
    )

    assert response.status_code == 404


def test_feature_variant_endpoint(client, admin_headers, user_headers):
    _put_flag(client, admin_headers, "smart_coach")
    experiment_id = _create_experiment(
        client, admin_headers, {"control": 0, "coach_v2": 100}, feature_name="smart_coach"
    ).json()["id"]
    client.post(f"/experiments/{experiment_id}/start", headers=admin_headers)

    response = client.get("/features/smart_coach/variant/user-1", headers=user_headers).json()

    assert response["experiment_id"] == experiment_id
    assert response["variant"] == "coach_v2"


def test_rollout_schedule_endpoints(client, admin_headers):
    _put_flag(client, admin_headers, "voice_commands", rollout_percentage=0)
    due = (datetime.utcnow() - timedelta(minutes=5)).isoformat()
    later = (datetime.utcnow() + timedelta(days=7)).isoformat()

    created = client.post(
        "/flags/voice_commands/rollout-schedules",
        json={"name": "Ramp", "steps": [
            {"target_percentage": 100, "execute_at": later},
            {"target_percentage": 20, "execute_at": due},
        ]},
        headers=admin_headers,
    )
    assert created.status_code == 201
    assert [s["target_percentage"] for s in created.json()["steps"]] == [20, 100]

    report = client.post("/rollouts/execute", headers=admin_headers).json()
    assert report["executed_count"] == 1
    assert client.get("/flags/voice_commands", headers=admin_headers).json()["rollout_percentage"] == 20


def test_event_type_endpoints(client, admin_headers):
    response = client.put(
        "/event-types/workout_minutes", json={"semantics": "accumulating"}, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.json()["semantics"] == "accumulating"

    listed = client.get("/event-types", headers=admin_headers).json()
    assert [t["name"] for t in listed] == ["workout_minutes"]


def test_conversion_value_must_be_bounded(client, admin_headers, user_headers):
    experiment_id = _create_experiment(
        client, admin_headers, {"control": 50, "treatment": 50}
    ).json()["id"]
    client.post(f"/experiments/{experiment_id}/start", headers=admin_headers)

    response = client.post(
        f"/experiments/{experiment_id}/conversions",
        json={"user_id": "user-1", "event_type": "workout_minutes", "value": 1e200},
        headers=user_headers,
    )

    assert response.status_code == 422
    events = client.get(f"/experiments/{experiment_id}/conversions", headers=admin_headers)
    assert events.json()["total"] == 0


def test_usage_endpoints(client, admin_headers, user_headers):
    _put_flag(client, admin_headers, "dark_mode")

    recorded = client.post(
        "/flags/dark_mode/usage",
        json={"user_id": "user-1", "action": "interaction", "component_path": "settings/theme"},
        headers=user_headers,
    )
    assert recorded.status_code == 201
    assert recorded.json()["feature_name"] == "dark_mode"
    assert recorded.json()["action"] == "interaction"

    missing = client.post("/flags/ghost/usage", json={"user_id": "user-1"}, headers=user_headers)
    assert missing.status_code == 404

    assert client.get("/flags/dark_mode/usage/analytics", headers=user_headers).status_code == 403
    analytics = client.get("/flags/dark_mode/usage/analytics", headers=admin_headers).json()
    assert analytics["active_users_24h"] == 1
    assert analytics["adoption_rate"] == 1.0
    assert analytics["engagement_score"] == 1.0

    trends = client.get("/flags/usage/trends?days=7", headers=admin_headers).json()
    assert len(trends) == 7
    assert trends[-1]["active_users"] == 1

    journey = client.get("/flags/usage/users/user-1", headers=admin_headers).json()
    assert [e["component_path"] for e in journey] == ["settings/theme"]
