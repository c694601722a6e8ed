from paysettle.utils.masking import MASKED_PLACEHOLDER, mask_payload


def test_mask_payload_masks_personal_data():
    payload = {
        "event_id": "evt_1",
        "email": "ada@example.com",
        "customer_name": "Ada Lovelace",
        "phone": "+44 20 7946 0958",
        "card_number": "4242 4242 4242 4242",
        "amount": "9.99",
    }

    masked = mask_payload(payload)

    assert masked["event_id"] == "evt_1"
    assert masked["amount"] == "9.99"
    assert masked["email"] == "***@example.com"
    assert masked["customer_name"] == MASKED_PLACEHOLDER
    assert masked["phone"] == "***58"
    assert masked["card_number"] == "************4242"
    assert payload["email"] == "ada@example.com"


def test_mask_payload_walks_nested_structures():
    payload = {
        "metadata": {"billing_email": "ops@example.com", "address": "1 Main St"},
        "contacts": [{"mobile": "0612345678"}, {"iban": "FR7630006000011234567890189"}],
        "tags": ["a", "b"],
    }

    masked = mask_payload(payload)

    assert masked["metadata"] == {"billing_email": "***@example.com", "address": MASKED_PLACEHOLDER}
    assert masked["contacts"][0] == {"mobile": "***78"}
    assert masked["contacts"][1]["iban"].endswith("0189")
    assert "FR76" not in masked["contacts"][1]["iban"]
    assert masked["tags"] == ["a", "b"]


def test_mask_payload_leaves_non_mappings_alone():
    assert mask_payload(["ada@example.com"]) == ["ada@example.com"]
    assert mask_payload(None) is None
