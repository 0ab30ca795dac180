# Overview: Pytest coverage for the HTTP surface (records, sync, system).

import pytest


class TestRecordRoutes:
    def test_create_get_update_delete(self, client):
        created = client.post("/api/records/inventory", json={"id": "p1", "description": "Tee 25mm", "quantity": 12})
        assert created.status_code == 201
        assert created.get_json()["record"]["quantity"] == 12

        fetched = client.get("/api/records/inventory/p1")
        assert fetched.status_code == 200
        assert fetched.get_json()["record"]["description"] == "Tee 25mm"

        updated = client.patch("/api/records/inventory/p1", json={"quantity": 10})
        assert updated.status_code == 200
        assert updated.get_json()["record"]["quantity"] == 10
        assert updated.get_json()["record"]["description"] == "Tee 25mm"

        deleted = client.delete("/api/records/inventory/p1")
        assert deleted.status_code == 200
        assert deleted.get_json()["deleted"]["id"] == "p1"
        assert client.get("/api/records/inventory/p1").status_code == 404

    def test_list_uses_collection_alias(self, client):
        client.post("/api/records/customers", json={"id": "c1", "name": "Halima"})
        response = client.get("/api/records/customer")
        assert response.status_code == 200
        assert response.get_json()["count"] == 1

    def test_duplicate_id_is_409(self, client):
        client.post("/api/records/report", json={"id": "r1"})
        response = client.post("/api/records/report", json={"id": "r1"})
        assert response.status_code == 409

    def test_update_missing_is_404(self, client):
        response = client.put("/api/records/inventory/ghost", json={"quantity": 1})
        assert response.status_code == 404

    def test_remote_key_is_redacted(self, client, gateway):
        client.put("/api/sync/remote", json={"url": "https://remote.test", "key": "secret-key"})

        record = client.get("/api/records/setting/app").get_json()["record"]
        assert record["remoteKey"] == "***"
        assert record["remoteUrl"] == "https://remote.test"
        listed = client.get("/api/records/setting").get_json()["records"]
        assert "secret-key" not in str(listed)

        updated = client.patch("/api/records/setting/app", json={"remoteKey": "***", "companyName": "Bomba Bora"})
        assert updated.get_json()["record"]["companyName"] == "Bomba Bora"
        assert gateway.get("setting", "app")["remoteKey"] == "secret-key"

    @pytest.mark.parametrize("path,body", [
        ("/api/records/suppliers", {"id": "x"}),
        ("/api/records/inventory", ["not", "an", "object"]),
    ])
    def test_bad_input_is_400(self, client, path, body):
        response = client.post(path, json=body)
        assert response.status_code == 400
        assert "error" in response.get_json()

    def test_changes_feed(self, client):
        first = client.post("/api/records/sale", json={"id": "s1", "items": []}).get_json()["record"]
        client.post("/api/records/sale", json={"id": "s2", "items": []})

        response = client.get("/api/records/sale/changes", query_string={"since": first["updatedAt"]})

        assert response.status_code == 200
        assert [r["id"] for r in response.get_json()["records"]] == ["s2"]
        assert client.get("/api/records/sale/changes?since=garbage").status_code == 400

    def test_low_stock(self, client):
        client.post("/api/records/inventory", json={"id": "p1", "quantity": 1, "alertThreshold": 3})
        client.post("/api/records/inventory", json={"id": "p2", "quantity": 30})

        response = client.get("/api/inventory/low-stock")
        assert [i["id"] for i in response.get_json()["items"]] == ["p1"]
        assert client.get("/api/inventory/low-stock?threshold=x").status_code == 400

    def test_customer_purchase(self, client):
        client.post("/api/records/customer", json={"id": "c1", "name": "Rehema"})

        response = client.post("/api/customers/c1/purchases", json={"amount": "1500.50"})

        assert response.status_code == 200
        assert response.get_json()["record"]["totalPurchases"] == 1500.5
        assert client.post("/api/customers/nobody/purchases", json={"amount": 1}).status_code == 404
        assert client.post("/api/customers/c1/purchases", json={}).status_code == 400


class TestSyncRoutes:
    def test_run_single_type(self, client, remote):
        client.post("/api/records/inventory", json={"id": "p1", "quantity": 2})

        response = client.post("/api/sync/run/inventory")

        assert response.status_code == 200
        body = response.get_json()
        assert body["success"] is True
        assert body["stats"]["pushed"] == 1
        assert "p1" in remote.tables["inventory"]

    def test_run_unknown_type_is_400(self, client):
        assert client.post("/api/sync/run/suppliers").status_code == 400

    @pytest.mark.parametrize("entity_type", ["setting", "report"])
    def test_local_only_types_are_not_synced(self, client, remote, entity_type):
        response = client.post(f"/api/sync/run/{entity_type}")

        assert response.status_code == 400
        assert "not synced" in response.get_json()["error"]
        assert "settings" not in remote.tables

    def test_run_all_offline_is_still_200(self, client, remote):
        remote.reachable = False

        response = client.post("/api/sync/run")

        assert response.status_code == 200
        assert response.get_json()["offline"] is True

        status = client.get("/api/sync/status").get_json()
        assert status["offline_markers"][0]["entity_type"] == "inventory"

        remote.reachable = True
        replay = client.post("/api/sync/offline").get_json()
        assert replay["success"] is True

    def test_configure_remote(self, client):
        bad = client.put("/api/sync/remote", json={"url": "https://remote.test"})
        assert bad.status_code == 400

        ok = client.put("/api/sync/remote", json={"url": "https://remote.test", "key": "k2"})
        assert ok.status_code == 200
        assert ok.get_json()["configured"] is True


class TestSystemRoutes:
    def test_health_primary(self, client):
        response = client.get("/api/system/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["storage"]["details"]["mode"] == "primary"

    def test_health_degraded_on_fallback(self, app_factory):
        app = app_factory(ENTITY_STORE_ENABLED=False)
        response = app.test_client().get("/api/system/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "degraded"

    def test_health_unhealthy_when_uninitialized(self, app_factory):
        app = app_factory(STORAGE_AUTO_INITIALIZE=False)
        response = app.test_client().get("/api/system/health")
        assert response.status_code == 503

    def test_storage_status(self, client):
        body = client.get("/api/system/storage").get_json()
        assert body["mode"] == "primary"
        assert body["counts"]["setting"] == 2

    def test_activity(self, client, remote):
        remote.reachable = False
        client.post("/api/sync/run/sale")

        events = client.get("/api/system/activity?type=sync.offline").get_json()["events"]

        assert events[-1]["entity_type"] == "sale"
        assert events[-1]["success"] is False
        assert client.get("/api/system/activity?limit=abc").status_code == 400

    def test_version(self, client):
        assert client.get("/api/system/version").get_json()["api_version"] == "1.0.0"
