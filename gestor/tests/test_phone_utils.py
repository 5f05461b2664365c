from gestor.utils.phone_utils import normalize_jid_to_phone, normalize_phone_with_ddi, phone_variants


def test_phone_variants_for_brazilian_mobiles():
    assert phone_variants("5511987654321") == ["5511987654321", "11987654321", "551187654321"]
    assert phone_variants("551187654321") == ["551187654321", "1187654321", "5511987654321"]
    assert phone_variants("11987654321") == ["11987654321", "5511987654321"]
    assert phone_variants("") == []


def test_normalize_phone_with_ddi():
    assert normalize_phone_with_ddi("(11) 98765-4321") == "5511987654321"
    assert normalize_phone_with_ddi("5511987654321") == "5511987654321"
    assert normalize_phone_with_ddi("1234") is None


def test_normalize_jid_to_phone():
    assert normalize_jid_to_phone("5511987654321@s.whatsapp.net") == "5511987654321"
    assert normalize_jid_to_phone("123@lid") == ""
    assert normalize_jid_to_phone("") == ""
