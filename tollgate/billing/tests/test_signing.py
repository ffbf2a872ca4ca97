import base64
import hashlib

from tollgate.billing import signing

API_KEY = "test-cryptomus-api-key"
MERCHANT_ID = "test-merchant-id"


def _reference_signature(body: str, api_key: str = API_KEY) -> str:
    encoded = base64.b64encode(body.encode("utf-8")).decode("ascii")
    return hashlib.md5((encoded + api_key).encode("utf-8")).hexdigest()  # noqa: S324


class TestCanonicalJson:
    def test_sorts_keys_and_drops_nulls(self):
        body = signing.canonical_json({"b": 1, "a": "x", "skip": None})

        assert body == '{"a":"x","b":1}'

    def test_leaves_slashes_and_unicode_unescaped(self):
        body = signing.canonical_json({"url": "https://example.com/a", "name": "café"})

        assert body == '{"name":"café","url":"https://example.com/a"}'


class TestSign:
    def test_matches_reference_digest(self):
        payload = {"amount": "19.99", "currency": "USD", "order_id": "one_time_1_2_3"}

        expected = _reference_signature(
            '{"amount":"19.99","currency":"USD","order_id":"one_time_1_2_3"}',
        )
        assert signing.sign(payload, API_KEY) == expected

    def test_is_lowercase_hex(self):
        signature = signing.sign({"a": 1}, API_KEY)

        assert len(signature) == 32
        assert signature == signature.lower()

    def test_key_order_does_not_matter(self):
        assert signing.sign({"a": 1, "b": 2}, API_KEY) == signing.sign(
            {"b": 2, "a": 1},
            API_KEY,
        )


class TestVerify:
    def _signed(self, payload: dict) -> dict:
        unsigned = {**payload, "merchant_id": MERCHANT_ID}
        return {**payload, "sign": signing.sign(unsigned, API_KEY)}

    def test_accepts_valid_signature(self):
        payload = self._signed({"uuid": "abc", "status": "paid"})

        assert signing.verify(payload, payload["sign"], API_KEY, MERCHANT_ID)

    def test_accepts_uppercase_signature(self):
        payload = self._signed({"uuid": "abc", "status": "paid"})

        assert signing.verify(payload, payload["sign"].upper(), API_KEY, MERCHANT_ID)

    def test_rejects_tampered_payload(self):
        payload = self._signed({"uuid": "abc", "status": "paid"})
        payload["status"] = "paid_over"

        assert not signing.verify(payload, payload["sign"], API_KEY, MERCHANT_ID)

    def test_rejects_wrong_key(self):
        payload = self._signed({"uuid": "abc", "status": "paid"})

        assert not signing.verify(payload, payload["sign"], "other-key", MERCHANT_ID)

    def test_rejects_missing_signature(self):
        assert not signing.verify({"uuid": "abc"}, None, API_KEY, MERCHANT_ID)
        assert not signing.verify({"uuid": "abc"}, "", API_KEY, MERCHANT_ID)

    def test_rejects_missing_api_key(self):
        payload = self._signed({"uuid": "abc"})

        assert not signing.verify(payload, payload["sign"], "", MERCHANT_ID)

    def test_explicit_merchant_id_is_respected(self):
        payload = {"uuid": "abc", "merchant_id": "someone-else"}
        payload["sign"] = signing.sign(payload, API_KEY)

        assert signing.verify(payload, payload["sign"], API_KEY, MERCHANT_ID)

    def test_accepts_slash_escaped_signature(self):
        payload = {"uuid": "abc", "url": "https://pay.example/x", "merchant_id": MERCHANT_ID}
        escaped_body = signing.canonical_json(payload).replace("/", "\\/")
        claimed = _reference_signature(escaped_body)

        assert signing.verify({**payload, "sign": claimed}, claimed, API_KEY, MERCHANT_ID)

    def test_unserializable_payload_fails_closed(self):
        payload = {"uuid": "abc", "blob": object()}

        assert not signing.verify(payload, "deadbeef", API_KEY, MERCHANT_ID)

    def test_nested_objects_keep_their_key_order(self):
        payload = {
            "uuid": "abc",
            "payment_status": "paid",
            "merchant_id": MERCHANT_ID,
            "convert": {
                "to_currency": "USDT",
                "commission": None,
                "rate": "1.0001",
                "amount": "19.99",
            },
        }
        gateway_body = (
            '{"convert":{"to_currency":"USDT","commission":null,"rate":"1.0001",'
            '"amount":"19.99"},"merchant_id":"test-merchant-id",'
            '"payment_status":"paid","uuid":"abc"}'
        )
        claimed = _reference_signature(gateway_body)

        assert signing.canonical_json(payload) == gateway_body
        assert signing.verify({**payload, "sign": claimed}, claimed, API_KEY, MERCHANT_ID)
