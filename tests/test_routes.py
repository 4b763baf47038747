import io


def _create_and_activate(client, name="Route test", product_id="hoodie", **activate):
    response = client.post("/experiments", json={"name": name, "product_id": product_id})
    assert response.status_code == 201
    exp_id = response.json()["id"]

    body = {"conversion_rate": 0.02, "avg_order_value": 50.0}
    body.update(activate)
    response = client.post(f"/experiments/{exp_id}/activate", json=body)
    assert response.status_code == 200
    return exp_id


def _events_csv_bytes() -> bytes:
    csv_content = (
        "session_id,variant,event,revenue\n"
        "s1,control,impression,\n"
        "s2,variant,impression,\n"
        "s2,variant,conversion,50\n"
    )
    return csv_content.encode("utf-8")


def test_create_and_activate(client):
    exp_id = _create_and_activate(client)

    detail = client.get(f"/experiments/{exp_id}").json()
    assert detail["status"] == "active"
    assert detail["control_allocation"] == 0.75
    assert detail["variant_allocation"] == 0.05
    assert abs(detail["exposure"] - 0.8) < 1e-9


def test_experiments_list(client):
    _create_and_activate(client, name="First", product_id="p-1")
    _create_and_activate(client, name="Second", product_id="p-2")

    response = client.get("/experiments")
    assert response.status_code == 200
    names = [e["name"] for e in response.json()]
    assert set(names) == {"First", "Second"}


def test_unknown_experiment_is_404(client):
    assert client.get("/experiments/999").status_code == 404
    assert client.post("/experiments/999/recompute").status_code == 404


def test_activate_twice_is_409(client):
    exp_id = _create_and_activate(client)

    response = client.post(f"/experiments/{exp_id}/activate", json={})
    assert response.status_code == 409


def test_bad_risk_mode_is_rejected(client):
    exp_id = client.post("/experiments", json={"name": "Risky"}).json()["id"]

    response = client.post(f"/experiments/{exp_id}/activate", json={"risk_mode": "yolo"})
    assert response.status_code == 422


def test_assign_is_sticky(client):
    exp_id = _create_and_activate(client)

    first = client.post(f"/experiments/{exp_id}/assign", json={"session_id": "sess-1"}).json()
    second = client.post(f"/experiments/{exp_id}/assign", json={"session_id": "sess-1"}).json()

    assert first["assigned"] is True
    assert first["variant"] == second["variant"]


def test_assign_falls_back_to_control(client):
    exp_id = client.post("/experiments", json={"name": "Draft"}).json()["id"]

    response = client.post(f"/experiments/{exp_id}/assign", json={"session_id": "sess-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["variant"] == "control"
    assert body["assigned"] is False
    assert "not active" in body["reason"]


def test_record_events_then_recompute_and_evaluate(client):
    exp_id = _create_and_activate(client)

    impressions = [{"session_id": f"s-{i}", "variant": "control" if i % 2 else "variant"} for i in range(200)]
    response = client.post(f"/experiments/{exp_id}/impressions", json={"impressions": impressions})
    assert response.json() == {"impressions": 200, "conversions": 0, "duplicates": 0}

    response = client.post(
        f"/experiments/{exp_id}/conversion",
        json={"session_id": "s-2", "variant": "variant", "revenue": 50.0, "dedup_key": "o-1"},
    )
    assert response.json()["conversions"] == 1
    response = client.post(
        f"/experiments/{exp_id}/conversion",
        json={"session_id": "s-2", "variant": "variant", "revenue": 50.0, "dedup_key": "o-1"},
    )
    assert response.json()["duplicates"] == 1

    recompute = client.post(f"/experiments/{exp_id}/recompute")
    assert recompute.status_code == 200
    body = recompute.json()
    assert abs(body["allocation"]["exposure"] - 1.0) < 1e-9
    assert 0 <= body["probability_variant_wins"] <= 1
    assert body["reasoning"]

    decision = client.post(f"/experiments/{exp_id}/evaluate").json()
    assert decision["status"] in ("active", "completed", "cancelled")
    assert decision["reasoning"]

    report = client.get(f"/experiments/{exp_id}/reconciliation").json()
    assert report["balanced"] is True
    assert report["arms"]["variant"]["counter_conversions"] == 1


def test_negative_revenue_is_rejected(client):
    exp_id = _create_and_activate(client)

    response = client.post(
        f"/experiments/{exp_id}/conversion",
        json={"session_id": "s-1", "variant": "control", "revenue": -1},
    )
    assert response.status_code == 422


def test_events_on_cancelled_experiment_are_409(client):
    exp_id = _create_and_activate(client)
    cancel = client.post(f"/experiments/{exp_id}/cancel", json={"reason": "Wrong price entered"})
    assert cancel.json()["stopped"] is True

    response = client.post(f"/experiments/{exp_id}/impression", json={"session_id": "s-1", "variant": "control"})
    assert response.status_code == 409

    # Evaluating a finished experiment changes nothing
    decision = client.post(f"/experiments/{exp_id}/evaluate").json()
    assert decision["status"] == "cancelled"
    assert decision["changed"] is False


def test_backfill_csv(client):
    exp_id = _create_and_activate(client)
    files = {"file": ("events.csv", io.BytesIO(_events_csv_bytes()), "text/csv")}

    response = client.post(f"/experiments/{exp_id}/backfill", files=files)

    assert response.status_code == 200
    body = response.json()
    assert body["ingested"] == {"impressions": 2, "conversions": 1, "duplicates": 0}
    assert body["recompute"]["experiment_id"] == exp_id

    timeseries = client.get(f"/experiments/{exp_id}/timeseries").json()
    assert sum(row["impressions"] for row in timeseries) == 2


def test_backfill_rejects_non_csv(client):
    exp_id = _create_and_activate(client)
    files = {"file": ("events.txt", io.BytesIO(b"hello"), "text/plain")}

    response = client.post(f"/experiments/{exp_id}/backfill", files=files)
    assert response.status_code == 400


def test_backfill_rejects_malformed_csv(client):
    exp_id = _create_and_activate(client)
    files = {"file": ("events.csv", io.BytesIO(b"session_id,variant\ns1,control\n"), "text/csv")}

    response = client.post(f"/experiments/{exp_id}/backfill", files=files)
    assert response.status_code == 400
    assert "missing required columns" in response.json()["detail"]


def test_simulate_route(client):
    exp_id = _create_and_activate(client)

    response = client.post(f"/experiments/{exp_id}/simulate", json={"visitors": 200, "seed": 3})

    assert response.status_code == 200
    body = response.json()
    assert body["control_impressions"] + body["variant_impressions"] == 200
    assert body["recompute"] is not None


def test_order_webhook_attributes_conversion(client):
    exp_id = _create_and_activate(client, product_id="hoodie")
    variant = client.post(f"/experiments/{exp_id}/assign", json={"session_id": "sess-9"}).json()["variant"]

    order = {
        "order_id": "5001",
        "session_id": "sess-9",
        "line_items": [{"product_id": "hoodie", "price": 45.0, "quantity": 1}],
    }
    response = client.post("/orders", json=order)

    assert response.status_code == 200
    body = response.json()
    assert body["attributed"] == [{"experiment_id": exp_id, "variant": variant, "revenue": 45.0}]
    assert str(exp_id) in body["decisions"]

    replay = client.post("/orders", json=order).json()
    assert replay["attributed"] == []
    assert replay["skipped"][0]["reason"] == "duplicate"


def test_infinite_revenue_is_rejected(client):
    exp_id = _create_and_activate(client)

    # Python's json module reads the bare Infinity literal
    response = client.post(
        f"/experiments/{exp_id}/conversion",
        content='{"session_id": "s-1", "variant": "variant", "revenue": Infinity}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422

    detail = client.get(f"/experiments/{exp_id}").json()
    assert detail["variant_conversions"] == 0
    assert detail["variant_revenue"] == 0.0


def test_order_with_infinite_price_is_rejected(client):
    _create_and_activate(client, product_id="hoodie")

    response = client.post(
        "/orders",
        content='{"session_id": "s-1", "line_items": [{"product_id": "hoodie", "price": Infinity}]}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422


def test_create_with_promotion_gate(client):
    response = client.post(
        "/experiments",
        json={"name": "Gated", "min_samples_per_arm": 2000, "min_probability_meaningful_lift": 0.95, "max_eoc_per_1000": 1.0},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["min_samples_per_arm"] == 2000
    assert body["max_eoc_per_1000"] == 1.0
