import pytest
import pytest_asyncio

EXPERIMENT = {
    "name": "welcome",
    "description": "Welcome push",
    "segment": "madrid",
    "variants": [
        {"name": "A", "title": "Title A", "content": "Hello A", "weight": 50},
        {"name": "B", "title": "Title B", "content": "Hello B", "weight": 50},
    ],
}


@pytest_asyncio.fixture
async def segment(client):
    response = await client.post(
        "/api/v1/segments",
        json={
            "name": "madrid",
            "description": "Madrid users",
            "rules": [
                {"type": "demographic", "field": "city", "operator": "equals", "value": "Madrid"}
            ],
        },
    )
    assert response.status_code == 201
    return response.json()


@pytest_asyncio.fixture
async def experiment(client, segment):
    response = await client.post("/api/v1/experiments", json=EXPERIMENT)
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_create_experiment(experiment):
    assert experiment["status"] == "draft"
    assert experiment["primary_metric"] == "clicks"
    assert [v["name"] for v in experiment["variants"]] == ["A", "B"]
    assert experiment["variants"][0]["metrics"]["impressions"] == 0


@pytest.mark.asyncio
async def test_create_experiment_invalid_weights(client, segment):
    payload = {
        **EXPERIMENT,
        "variants": [
            {"name": "A", "title": "t", "content": "c", "weight": 70},
            {"name": "B", "title": "t", "content": "c", "weight": 50},
        ],
    }

    response = await client.post("/api/v1/experiments", json=payload)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_experiment_unknown_segment(client):
    response = await client.post("/api/v1/experiments", json=EXPERIMENT)

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_lifecycle(client, experiment):
    experiment_id = experiment["id"]

    started = await client.post(f"/api/v1/experiments/{experiment_id}/start")
    assert started.status_code == 200
    assert started.json()["status"] == "active"

    again = await client.post(f"/api/v1/experiments/{experiment_id}/start")
    assert again.status_code == 409
    assert again.json()["error"] == "state_error"

    paused = await client.post(f"/api/v1/experiments/{experiment_id}/pause")
    assert paused.json()["status"] == "paused"

    completed = await client.post(f"/api/v1/experiments/{experiment_id}/complete")
    assert completed.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_restricted_update_conflict(client, experiment):
    await client.post(f"/api/v1/experiments/{experiment['id']}/start")

    response = await client.patch(
        f"/api/v1/experiments/{experiment['id']}", json={"segment": "elsewhere"}
    )

    assert response.status_code == 409
    assert response.json()["field"] == "segment"


@pytest.mark.asyncio
async def test_delete_active_experiment_conflict(client, experiment):
    await client.post(f"/api/v1/experiments/{experiment['id']}/start")

    response = await client.delete(f"/api/v1/experiments/{experiment['id']}")

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_list_experiments_by_status(client, experiment):
    await client.post(f"/api/v1/experiments/{experiment['id']}/start")

    active = (await client.get("/api/v1/experiments", params={"status": "active"})).json()
    drafts = (await client.get("/api/v1/experiments", params={"status": "draft"})).json()

    assert [e["name"] for e in active["experiments"]] == ["welcome"]
    assert drafts["total"] == 0


@pytest.mark.asyncio
async def test_track_metric(client, experiment):
    first = await client.post("/api/v1/experiments/track/welcome/A/clicks")
    second = await client.post("/api/v1/experiments/track/welcome/A/clicks", json={"value": 3})

    assert first.json()["value"] == 1
    assert second.json()["value"] == 4


@pytest.mark.asyncio
async def test_track_unknown_variant(client, experiment):
    response = await client.post("/api/v1/experiments/track/welcome/Z/clicks")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_track_unknown_metric(client, experiment):
    response = await client.post("/api/v1/experiments/track/welcome/A/shares")

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_send_experiment(client, experiment, sender):
    await client.post(f"/api/v1/experiments/{experiment['id']}/start")

    response = await client.post(
        "/api/v1/experiments/welcome/send", json={"additional_data": {"campaign": "spring"}}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["total_recipients"] == 3
    assert all(call["data"]["campaign"] == "spring" for call in sender.calls)

    fetched = (await client.get("/api/v1/experiments/welcome")).json()
    assert sum(v["metrics"]["impressions"] for v in fetched["variants"]) == 3


@pytest.mark.asyncio
async def test_send_draft_experiment_conflict(client, experiment):
    response = await client.post("/api/v1/experiments/welcome/send")

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_send_reports_failed_variant(client, experiment, sender):
    sender.fail_titles = {"Title A"}
    await client.post(f"/api/v1/experiments/{experiment['id']}/start")

    response = await client.post("/api/v1/experiments/welcome/send")

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    failed = [v for v in data["variants"] if v["error"]]
    assert [v["variant"] for v in failed] == ["A"]


@pytest.mark.asyncio
async def test_results(client, experiment):
    await client.post("/api/v1/experiments/track/welcome/A/impressions", json={"value": 10})
    await client.post("/api/v1/experiments/track/welcome/A/clicks", json={"value": 5})
    await client.post("/api/v1/experiments/track/welcome/B/impressions", json={"value": 10})
    await client.post("/api/v1/experiments/track/welcome/B/clicks", json={"value": 2})

    response = await client.get("/api/v1/experiments/welcome/results")

    assert response.status_code == 200
    data = response.json()
    assert data["leader"] == "A"
    assert data["winner"] is None
    assert data["significance"]["runner_up"] == "B"


@pytest.mark.asyncio
async def test_rename_targeted_segment_conflict(client, segment, experiment):
    response = await client.patch(f"/api/v1/segments/{segment['id']}", json={"name": "capital"})

    assert response.status_code == 409
    assert response.json()["field"] == "name"
    assert (await client.get("/api/v1/segments/madrid")).status_code == 200
