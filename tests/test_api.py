from chipvault.readers.memory import MifareClassicCard
from conftest import insert_order, make_uid


def register_via_api(client, n):
    response = client.post("/api/chips/register", json={"uid": make_uid(n), "actor": "stock"})
    assert response.status_code == 201, response.text
    return response.json()


def move(client, chip_pk, *statuses):
    for status in statuses:
        response = client.post(
            f"/api/chips/{chip_pk}/transition", json={"new_status": status, "actor": "operator"}
        )
        assert response.status_code == 200, response.text


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_register_and_read_back(client):
    chip = register_via_api(client, 1)
    assert chip["status"] == "EN_STOCK"

    assert client.get(f"/api/chips/{chip['id']}").json()["chip_id"] == chip["chip_id"]
    info = client.get(f"/api/chips/info/{chip['uid']}").json()
    assert info["registered"] is True and info["is_encoded"] is False

    duplicate = client.post("/api/chips/register", json={"uid": chip["uid"], "actor": "stock"})
    assert duplicate.status_code == 409


def test_invalid_transition_is_a_conflict(client):
    chip = register_via_api(client, 2)
    response = client.post(
        f"/api/chips/{chip['id']}/transition", json={"new_status": "ACTIVE", "actor": "operator"}
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "InvalidTransition"
    assert body["from_status"] == "EN_STOCK" and body["to_status"] == "ACTIVE"
    assert client.get(f"/api/chips/{chip['id']}/status-history").json() == []


def test_unknown_chip_is_404(client):
    assert client.get("/api/chips/999").status_code == 404


def test_workstation_encoding_round_trip(client):
    chip = register_via_api(client, 3)
    move(client, chip["id"], "EN_TRANSIT", "EN_ATELIER")

    params = client.post("/api/chips/request-encoding", json={"uid": chip["uid"]}).json()
    assert params["chip_id"] == chip["chip_id"]
    assert len(params["salt"]) == 32 and len(params["checksum"]) == 32 and len(params["chip_key"]) == 12

    confirmed = client.post("/api/chips/confirm-encoding", json={
        "uid": chip["uid"], "chip_id": params["chip_id"], "checksum": params["checksum"],
        "actor": "workstation",
    })
    assert confirmed.status_code == 200, confirmed.text
    assert confirmed.json()["status"] == "INACTIVE"

    history = client.get(f"/api/chips/{chip['id']}/status-history").json()
    assert [h["to_status"] for h in history] == ["EN_TRANSIT", "EN_ATELIER", "INACTIVE"]


def test_partial_failure_report(client):
    chip = register_via_api(client, 4)
    move(client, chip["id"], "EN_TRANSIT", "EN_ATELIER")
    client.post("/api/chips/request-encoding", json={"uid": chip["uid"]})

    response = client.post("/api/chips/report-encoding-failure", json={
        "uid": chip["uid"], "failed_step": "LOCK_SECTOR_2", "locked_sectors": [1],
        "completed_steps": ["READ_UID", "WRITE_PUBLIC_ID", "WRITE_PROTECTED_ID",
                            "WRITE_CHECKSUM", "LOCK_SECTOR_1"],
    })
    assert response.json() == {"chip_id": chip["chip_id"], "encoding_state": "PARTIAL", "retryable": False}
    assert client.post("/api/chips/request-encoding", json={"uid": chip["uid"]}).status_code == 409


def test_stock_and_reservations(client, db):
    for n in range(10, 13):
        register_via_api(client, n)
    big = insert_order(db, 3)
    extra = insert_order(db, 1)

    assert client.get("/api/stock").json()["available_stock"] == 3
    assert client.post(f"/api/orders/{big}/reserve").status_code == 200

    refused = client.post(f"/api/orders/{extra}/reserve")
    assert refused.status_code == 409
    assert refused.json()["available"] == 0 and refused.json()["requested"] == 1

    assert client.post(f"/api/orders/{big}/release").json()["released"] is True
    assert client.post(f"/api/orders/{big}/release").json()["released"] is False
    assert client.post("/api/orders/999/reserve").status_code == 404


def test_readers_encode_verify_and_activate(client, reader, keys):
    chip = register_via_api(client, 20)
    move(client, chip["id"], "EN_TRANSIT", "EN_ATELIER")
    card = MifareClassicCard(chip["uid"])
    reader.present(card)

    assert client.get("/api/readers").json() == [{"name": "bench", "busy": False}]

    encoded = client.post("/api/readers/bench/encode", json={"actor": "workshop"})
    assert encoded.status_code == 200, encoded.text
    assert encoded.json()["chip"]["status"] == "INACTIVE"
    assert encoded.json()["completed_steps"][-1] == "LOCK_SECTOR_2"

    verified = client.post("/api/readers/bench/verify")
    assert verified.status_code == 200, verified.text
    assert verified.json()["verified"] is True

    reader.present(card.clone())
    clone = client.post("/api/readers/bench/verify")
    reader.present(card)
    assert clone.status_code == 403
    assert clone.json()["error"] == "AuthenticationError"

    # deliver, then activate from a phone
    move(client, chip["id"], "EN_LIVRAISON", "LIVREE")
    key = keys.derive_chip_key(chip["chip_id"])
    activated = client.post("/api/chips/activate", json={
        "uid": chip["uid"], "chip_id": chip["chip_id"],
        "block4": card.read(4, key).hex(), "block8": card.read(8, key).hex(),
        "customer_id": "CUST-9", "control_point_id": "CP-1",
    })
    assert activated.status_code == 200, activated.text
    assert activated.json()["activated"] is True

    whitelist = client.get("/api/chips/whitelist/CUST-9").json()
    assert [c["chip_id"] for c in whitelist["chips"]] == [chip["chip_id"]]


def test_no_tag_is_408(client):
    response = client.post("/api/readers/bench/wait", json={"timeout": 0.01})
    assert response.status_code == 408


def test_unencoded_chip_cannot_be_activated(client):
    chip = register_via_api(client, 30)
    response = client.post("/api/chips/activate", json={
        "uid": chip["uid"], "chip_id": chip["chip_id"], "block4": "xyz", "block8": "00",
    })
    assert response.status_code == 409


def test_chip_list_and_count_by_order(client, db):
    chips = [register_via_api(client, n) for n in range(60, 63)]
    move(client, chips[0]["id"], "EN_TRANSIT")

    in_stock = client.get("/api/chips", params={"status": "EN_STOCK"}).json()
    assert sorted(c["id"] for c in in_stock) == sorted(c["id"] for c in chips[1:])
    assert len(client.get("/api/chips", params={"limit": 1}).json()) == 1

    order = insert_order(db, 2)
    assigned = client.put(f"/api/chips/{chips[1]['id']}/assign-order",
                          json={"order_id": order, "actor": "packer"})
    assert assigned.status_code == 200, assigned.text
    assert client.get(f"/api/chips/count-by-order/{order}").json() == {"order_id": order, "count": 1}
    assert client.get("/api/chips/count-by-order/999").status_code == 404


def test_security_log_lists_verifications(client, station, encoded_chip):
    chip, _ = encoded_chip
    station.verify("bench")
    events = client.get("/api/security-log", params={"chip_id": chip["chip_id"]}).json()
    assert [e["category"] for e in events] == ["VERIFIED"]
    assert events[0]["source"] == "READER"
