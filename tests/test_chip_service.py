import re
import pytest
from chipvault.database import utcnow
from chipvault.models.enums import ChipStatus, EncodingState
from chipvault.protocol.encoding import CardEncodingProtocol
from chipvault.protocol.layout import CHECKSUM_BLOCK, PROTECTED_ID_BLOCK, encode_chip_id
from chipvault.readers.memory import MemoryReader, MifareClassicCard
from chipvault.services.chip_service import ChipService
from chipvault.utils.exceptions import (
    AuthenticationError, ChecksumMismatch, ChipAlreadyRegistered, ChipNotFound,
    ConfigurationError, EncodingStateError, InvalidTransition, ValidationFailed,
)
from conftest import (
    ARCHIVE_REASON, advance, chip_in_workshop, fetch_chip, insert_order, make_uid, register,
    security_rows,
)

S = ChipStatus


# ---------------------------------------------------------------------------
# Registration and lookups
# ---------------------------------------------------------------------------
def test_register_generates_sequential_chip_ids(db, chip_service):
    first = register(db, chip_service, 1)
    second = register(db, chip_service, 2)

    assert re.fullmatch(r"LC-\d{4}-\d{2}-00001", first["chip_id"])
    assert second["chip_id"].endswith("-00002")
    assert len(first["chip_id"]) == 16
    assert first["status"] == S.EN_STOCK.value
    assert first["encoding_state"] == EncodingState.UNENCODED.value
    assert "salt" not in first and "checksum" not in first


def test_register_normalizes_and_rejects_duplicate_uids(db, chip_service):
    with db.get_connection() as conn:
        chip = chip_service.register_chip(conn, "04:aa:bb:cc:dd:ee:ff", "stock")
    assert chip["uid"] == "04AABBCCDDEEFF"

    with pytest.raises(ChipAlreadyRegistered):
        with db.get_connection() as conn:
            chip_service.register_chip(conn, "04AABBCCDDEEFF", "stock")


def test_register_with_explicit_chip_id(db, chip_service):
    with db.get_connection() as conn:
        chip = chip_service.register_chip(conn, make_uid(3), "stock", chip_id="CUSTOM-0001")
    assert chip["chip_id"] == "CUSTOM-0001"


def test_chip_info(db, chip_service):
    chip = register(db, chip_service, 4)
    with db.get_connection() as conn:
        known = chip_service.chip_info(conn, chip["uid"].lower())
        unknown = chip_service.chip_info(conn, make_uid(5))
    assert known["registered"] and known["chip_id"] == chip["chip_id"]
    assert not known["is_encoded"]
    assert unknown == {"uid": make_uid(5), "registered": False, "is_encoded": False,
                       "message": "Unknown chip"}


def test_unknown_chip(db, chip_service):
    with pytest.raises(ChipNotFound):
        with db.get_connection() as conn:
            chip_service.get_chip(conn, 12345)


# ---------------------------------------------------------------------------
# Workstation encoding
# ---------------------------------------------------------------------------
def test_encoding_requires_workshop_status(db, chip_service):
    chip = register(db, chip_service, 10)
    with pytest.raises(EncodingStateError):
        with db.get_connection() as conn:
            chip_service.request_encoding(conn, chip["uid"])


def test_reissue_returns_the_same_material(db, chip_service, keys):
    chip = chip_in_workshop(db, chip_service, 11)
    with db.get_connection() as conn:
        first = chip_service.request_encoding(conn, chip["uid"])
    with db.get_connection() as conn:
        second = chip_service.request_encoding(conn, chip["uid"])

    assert first == second
    assert first["chip_key"] == keys.derive_chip_key(chip["chip_id"]).hex().upper()
    assert fetch_chip(db, chip["id"])["encoding_state"] == EncodingState.ISSUED.value


def test_workstation_flow_confirms_to_inactive(db, chip_service, keys, checksums):
    chip = chip_in_workshop(db, chip_service, 12)
    with db.get_connection() as conn:
        params = chip_service.request_encoding(conn, chip["uid"])

    # workstation writes the tag itself with the issued salt
    card = MifareClassicCard(chip["uid"])
    CardEncodingProtocol(keys, checksums).encode(
        MemoryReader("wpf", card), params["chip_id"], salt=bytes.fromhex(params["salt"])
    )

    with db.get_connection() as conn:
        confirmed = chip_service.confirm_encoding(
            conn, chip["uid"], params["chip_id"], params["checksum"].lower(), "workstation-1"
        )
    assert confirmed["status"] == S.INACTIVE.value
    assert confirmed["encoding_state"] == EncodingState.PROTECTED.value
    assert confirmed["is_encoded"] is True
    assert confirmed["encoding_date"] is not None

    with pytest.raises(EncodingStateError):
        with db.get_connection() as conn:
            chip_service.request_encoding(conn, chip["uid"])


def test_confirm_with_wrong_checksum_is_refused(db, chip_service):
    chip = chip_in_workshop(db, chip_service, 13)
    with db.get_connection() as conn:
        params = chip_service.request_encoding(conn, chip["uid"])
    with pytest.raises(ChecksumMismatch):
        with db.get_connection() as conn:
            chip_service.confirm_encoding(conn, chip["uid"], params["chip_id"], "00" * 16, "ws")
    assert fetch_chip(db, chip["id"])["status"] == S.EN_ATELIER.value


def test_failure_before_locking_keeps_parameters(db, chip_service):
    chip = chip_in_workshop(db, chip_service, 14)
    with db.get_connection() as conn:
        params = chip_service.request_encoding(conn, chip["uid"])
    with db.get_connection() as conn:
        outcome = chip_service.report_encoding_failure(
            conn, chip["uid"], "WRITE_CHECKSUM", [], ["READ_UID", "WRITE_PUBLIC_ID"]
        )
    assert outcome["retryable"] is True
    with db.get_connection() as conn:
        assert chip_service.request_encoding(conn, chip["uid"])["salt"] == params["salt"]


def test_failure_on_first_lock_is_partial(db, chip_service):
    chip = chip_in_workshop(db, chip_service, 16)
    with db.get_connection() as conn:
        chip_service.request_encoding(conn, chip["uid"])
        chip_service.mark_encoded(conn, chip["uid"])
    with db.get_connection() as conn:
        outcome = chip_service.report_encoding_failure(
            conn, chip["uid"], "LOCK_SECTOR_1", [],
            ["READ_UID", "WRITE_PUBLIC_ID", "WRITE_PROTECTED_ID", "WRITE_CHECKSUM"],
        )
    assert outcome["retryable"] is False
    assert fetch_chip(db, chip["id"])["encoding_state"] == EncodingState.PARTIAL.value
    assert len(security_rows(db, "ENCODING_PARTIAL")) == 1


def test_encoded_chip_waits_for_lock_confirmation(db, chip_service):
    chip = chip_in_workshop(db, chip_service, 17)
    with db.get_connection() as conn:
        params = chip_service.request_encoding(conn, chip["uid"])
        assert chip_service.mark_encoded(conn, chip["uid"])["encoding_state"] == EncodingState.ENCODED.value

    with pytest.raises(EncodingStateError):
        with db.get_connection() as conn:
            chip_service.request_encoding(conn, chip["uid"])

    with db.get_connection() as conn:
        confirmed = chip_service.confirm_encoding(
            conn, chip["uid"], params["chip_id"], params["checksum"], "workstation-1"
        )
    assert confirmed["encoding_state"] == EncodingState.PROTECTED.value


def test_chip_id_prefix_must_leave_room_for_the_sequence(keys, checksums, lifecycle, ledger, security):
    with pytest.raises(ConfigurationError):
        ChipService(keys, checksums, lifecycle, ledger, security, chip_id_prefix="LCX")
    with pytest.raises(ConfigurationError):
        ChipService(keys, checksums, lifecycle, ledger, security, chip_id_prefix="L-")
    assert ChipService(keys, checksums, lifecycle, ledger, security, chip_id_prefix="Q").chip_id_prefix == "Q"


def test_monthly_sequence_exhausted(db, chip_service):
    now = utcnow()
    with db.get_connection() as conn:
        chip_service.register_chip(conn, make_uid(40), "stock", chip_id=f"LC-{now:%Y}-{now:%m}-99999")
    with pytest.raises(ValidationFailed):
        register(db, chip_service, 41)


def test_list_chips_filters_and_pages(db, chip_service):
    chips = [register(db, chip_service, n) for n in range(50, 54)]
    advance(db, chip_service, chips[0]["id"], S.EN_TRANSIT)
    with db.get_connection() as conn:
        in_stock = chip_service.list_chips(conn, S.EN_STOCK)
        page = chip_service.list_chips(conn, skip=1, limit=2)
    assert sorted(c["id"] for c in in_stock) == sorted(c["id"] for c in chips[1:])
    assert all("salt" not in c for c in in_stock)
    assert len(page) == 2


def test_partial_lock_blocks_reencoding_until_scrapped(db, chip_service):
    chip = chip_in_workshop(db, chip_service, 15)
    with db.get_connection() as conn:
        chip_service.request_encoding(conn, chip["uid"])
    with db.get_connection() as conn:
        outcome = chip_service.report_encoding_failure(
            conn, chip["uid"], "LOCK_SECTOR_2", [1],
            ["READ_UID", "WRITE_PUBLIC_ID", "WRITE_PROTECTED_ID", "WRITE_CHECKSUM", "LOCK_SECTOR_1"],
        )
    assert outcome == {"chip_id": chip["chip_id"], "encoding_state": "PARTIAL", "retryable": False}
    assert len(security_rows(db, "ENCODING_PARTIAL")) == 1

    with pytest.raises(EncodingStateError):
        with db.get_connection() as conn:
            chip_service.request_encoding(conn, chip["uid"])

    with db.get_connection() as conn:
        scrapped = chip_service.scrap(conn, chip["id"], ARCHIVE_REASON, "workshop")
    assert scrapped["status"] == S.ARCHIVEE.value


# ---------------------------------------------------------------------------
# Lifecycle operations
# ---------------------------------------------------------------------------
def deliverable_chip(db, chip_service, encoded_chip, customer="CUST-1"):
    chip, card = encoded_chip
    order = insert_order(db, 1, customer_id=customer)
    with db.get_connection() as conn:
        chip_service.assign_to_order(conn, chip["id"], order, "packer")
    with db.get_connection() as conn:
        shipped = chip_service.ship(conn, chip["id"], "shipper")
    return shipped, card


def test_ship_generates_packaging_code(db, chip_service, encoded_chip):
    shipped, _ = deliverable_chip(db, chip_service, encoded_chip)
    assert shipped["status"] == S.EN_LIVRAISON.value
    assert re.fullmatch(r"PKG-\d{8}-[A-Z0-9]{8}", shipped["packaging_code"])
    assert shipped["shipped_date"] is not None


def test_ship_requires_an_order(db, chip_service, encoded_chip):
    chip, _ = encoded_chip
    with pytest.raises(ValidationFailed):
        with db.get_connection() as conn:
            chip_service.ship(conn, chip["id"], "shipper")


def test_confirm_delivery_checks_packaging_code(db, chip_service, encoded_chip):
    shipped, _ = deliverable_chip(db, chip_service, encoded_chip)
    with pytest.raises(ValidationFailed):
        with db.get_connection() as conn:
            chip_service.confirm_delivery(conn, shipped["id"], "PKG-00000000-WRONG000", "customer")

    with db.get_connection() as conn:
        delivered = chip_service.confirm_delivery(
            conn, shipped["id"], shipped["packaging_code"].lower(), "customer"
        )
    assert delivered["status"] == S.LIVREE.value


def phone_blocks(card, keys, chip_id):
    key = keys.derive_chip_key(chip_id)
    return card.read(PROTECTED_ID_BLOCK, key).hex(), card.read(CHECKSUM_BLOCK, key).hex()


def delivered_chip(db, chip_service, encoded_chip):
    shipped, card = deliverable_chip(db, chip_service, encoded_chip)
    with db.get_connection() as conn:
        chip_service.confirm_delivery(conn, shipped["id"], shipped["packaging_code"], "customer")
    return shipped, card


def test_activation_and_whitelist(db, chip_service, encoded_chip, keys):
    chip, card = delivered_chip(db, chip_service, encoded_chip)
    block4, block8 = phone_blocks(card, keys, chip["chip_id"])

    with db.get_connection() as conn:
        outcome = chip_service.activate_chip(
            conn, chip["uid"], chip["chip_id"], block4, block8, "phone",
            customer_id="CUST-1", control_point_id="CP-42",
        )
    assert outcome["activated"] is True
    assert outcome["status"] == S.ACTIVE.value
    assert outcome["control_point_id"] == "CP-42"
    assert outcome["activation_date"] is not None

    with db.get_connection() as conn:
        again = chip_service.activate_chip(conn, chip["uid"], chip["chip_id"], block4, block8, "phone")
    assert again["activated"] is False
    assert again["status"] == S.ACTIVE.value

    with db.get_connection() as conn:
        whitelist = chip_service.whitelist(conn, "CUST-1")
        other = chip_service.whitelist(conn, "CUST-2")
    assert [c["chip_id"] for c in whitelist["chips"]] == [chip["chip_id"]]
    assert whitelist["chips"][0]["control_point_id"] == "CP-42"
    assert other["chips"] == []
    assert len(security_rows(db, "VERIFIED")) == 2


def test_forged_block4_is_audited_as_authentication_failure(db, chip_service, encoded_chip, keys):
    chip, card = delivered_chip(db, chip_service, encoded_chip)
    _, block8 = phone_blocks(card, keys, chip["chip_id"])
    forged = encode_chip_id("LC-1999-01-00001").hex()

    with pytest.raises(AuthenticationError):
        with db.get_connection() as conn:
            chip_service.activate_chip(conn, chip["uid"], chip["chip_id"], forged, block8, "phone")

    assert fetch_chip(db, chip["id"])["status"] == S.LIVREE.value
    rows = security_rows(db, "AUTHENTICATION_FAILURE")
    assert len(rows) == 1
    assert rows[0]["source"] == "MOBILE"
    assert rows[0]["chip_id"] == chip["chip_id"]


def test_activation_before_delivery_is_an_invalid_transition(db, chip_service, encoded_chip, keys):
    chip, card = encoded_chip
    block4, block8 = phone_blocks(card, keys, chip["chip_id"])
    with pytest.raises(InvalidTransition):
        with db.get_connection() as conn:
            chip_service.activate_chip(conn, chip["uid"], chip["chip_id"], block4, block8, "phone")


def test_unencoded_chip_cannot_be_activated(db, chip_service):
    chip = register(db, chip_service, 20)
    with pytest.raises(EncodingStateError):
        with db.get_connection() as conn:
            chip_service.activate_chip(conn, chip["uid"], chip["chip_id"], "00" * 16, "00" * 16, "phone")


def test_replacement_already_delivered_archives_old_chip(db, chip_service):
    old = register(db, chip_service, 30)
    new = register(db, chip_service, 31)
    advance(db, chip_service, old["id"], S.EN_TRANSIT, S.EN_ATELIER, S.INACTIVE, S.RETOUR_SAV)
    advance(db, chip_service, new["id"], S.EN_TRANSIT, S.EN_ATELIER, S.INACTIVE, S.EN_LIVRAISON, S.LIVREE)

    with db.get_connection() as conn:
        chip_service.receive_sav(conn, old["id"], "sav")
    with db.get_connection() as conn:
        replaced = chip_service.replace(conn, old["id"], new["id"], "sav")

    assert replaced["status"] == S.ARCHIVEE.value
    assert replaced["replacement_chip_id"] == new["id"]
    with db.get_connection() as conn:
        statuses = [e["to_status"] for e in chip_service.status_history(conn, old["id"])]
    assert statuses[-2:] == [S.REMPLACEE.value, S.ARCHIVEE.value]


def test_delivering_a_replacement_archives_the_old_chip(db, chip_service):
    old = register(db, chip_service, 32)
    new = register(db, chip_service, 33)
    advance(db, chip_service, old["id"], S.EN_TRANSIT, S.EN_ATELIER, S.INACTIVE, S.RETOUR_SAV,
            S.RECEPTION_SAV)
    advance(db, chip_service, new["id"], S.EN_TRANSIT, S.EN_ATELIER)
    order = insert_order(db, 1)
    with db.get_connection() as conn:
        chip_service.assign_to_order(conn, new["id"], order, "packer")
    advance(db, chip_service, new["id"], S.INACTIVE)

    with db.get_connection() as conn:
        assert chip_service.replace(conn, old["id"], new["id"], "sav")["status"] == S.REMPLACEE.value
    with db.get_connection() as conn:
        shipped = chip_service.ship(conn, new["id"], "shipper")
    with db.get_connection() as conn:
        chip_service.confirm_delivery(conn, new["id"], shipped["packaging_code"], "customer")

    assert fetch_chip(db, old["id"])["status"] == S.ARCHIVEE.value


def test_request_sav_needs_a_reason(db, chip_service):
    chip = register(db, chip_service, 40)
    advance(db, chip_service, chip["id"], S.EN_TRANSIT, S.EN_ATELIER, S.INACTIVE)
    with pytest.raises(ValidationFailed):
        with db.get_connection() as conn:
            chip_service.request_sav(conn, chip["id"], " ", "customer")
    with db.get_connection() as conn:
        returned = chip_service.request_sav(conn, chip["id"], "does not scan", "customer")
    assert returned["status"] == S.RETOUR_SAV.value
    assert returned["sav_reason"] == "does not scan"


def test_archive_reason_needs_enough_words(db, chip_service):
    chip = register(db, chip_service, 41)
    advance(db, chip_service, chip["id"], S.EN_TRANSIT, S.EN_ATELIER)
    with pytest.raises(ValidationFailed):
        with db.get_connection() as conn:
            chip_service.scrap(conn, chip["id"], "broken", "workshop")
    assert fetch_chip(db, chip["id"])["status"] == S.EN_ATELIER.value


def test_only_workshop_chips_can_be_scrapped(db, chip_service):
    chip = register(db, chip_service, 42)
    with pytest.raises(ValidationFailed):
        with db.get_connection() as conn:
            chip_service.scrap(conn, chip["id"], ARCHIVE_REASON, "workshop")
