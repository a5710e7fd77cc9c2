import base64
import unittest

from fakes import FakeDynamoResource, FakeKmsClient

from ledgerdrive.config import Settings
from ledgerdrive.credentials import (
    OPERATOR_KEY_ROW_ID,
    KmsKeyCustody,
    OperatorCredentials,
    credentials_provider,
    load_encrypted_operator_key,
    operator_credentials,
)
from ledgerdrive.errors import ConfigurationError

CIPHERTEXT = b"kms-ciphertext"
CIPHERTEXT_B64 = base64.b64encode(CIPHERTEXT).decode("ascii")
RAW_KEY = bytes(range(1, 33))
ACCOUNT = "0x" + "AB" * 20


class FakeKeyTable:
    def __init__(self, item=None):
        self.item = item
        self.requests = []

    def get_item(self, Key, ConsistentRead=False):
        self.requests.append({"Key": Key, "ConsistentRead": ConsistentRead})
        return {"Item": self.item} if self.item else {}


def settings(**overrides):
    values = {"index_table_name": "object-index"}
    values.update(overrides)
    return Settings(**values)


class OperatorCredentialsTests(unittest.TestCase):
    def test_wipe_releases_key(self):
        credentials = OperatorCredentials(None, RAW_KEY)

        self.assertEqual(credentials.private_key, RAW_KEY)
        credentials.wipe()

        self.assertTrue(credentials.released)
        with self.assertRaises(RuntimeError):
            _ = credentials.private_key

    def test_repr_hides_key(self):
        self.assertNotIn(RAW_KEY.hex(), repr(OperatorCredentials(None, RAW_KEY)))


class LoadEncryptedKeyTests(unittest.TestCase):
    def test_environment_source(self):
        loaded = load_encrypted_operator_key(
            settings(operator_key_encrypted=CIPHERTEXT_B64, operator_account_id=ACCOUNT, operator_key_kms_key_id="alias/k")
        )

        self.assertEqual(loaded.ciphertext_b64, CIPHERTEXT_B64)
        self.assertEqual(loaded.account_id, ACCOUNT.lower())
        self.assertEqual(loaded.kms_key_id, "alias/k")

    def test_placeholder_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            load_encrypted_operator_key(settings(operator_key_encrypted="PLACEHOLDER_ENCRYPTED_PRIVATE_KEY"))

    def test_table_source(self):
        table = FakeKeyTable(
            {
                "user_id": OPERATOR_KEY_ROW_ID,
                "account_id": ACCOUNT,
                "encrypted_private_key": CIPHERTEXT_B64,
            }
        )
        dynamodb = FakeDynamoResource({"operator-keys": table})

        loaded = load_encrypted_operator_key(settings(operator_keys_table_name="operator-keys"), dynamodb=dynamodb)

        self.assertEqual(table.requests, [{"Key": {"user_id": OPERATOR_KEY_ROW_ID}, "ConsistentRead": True}])
        self.assertEqual(loaded.ciphertext_b64, CIPHERTEXT_B64)
        self.assertEqual(loaded.account_id, ACCOUNT.lower())

    def test_missing_source(self):
        with self.assertRaises(ConfigurationError):
            load_encrypted_operator_key(settings())

    def test_invalid_account(self):
        with self.assertRaises(ConfigurationError):
            load_encrypted_operator_key(settings(operator_key_encrypted=CIPHERTEXT_B64, operator_account_id="0.0.1234"))


class OperatorCredentialsScopeTests(unittest.TestCase):
    def test_key_is_decrypted_and_wiped(self):
        kms = FakeKmsClient({CIPHERTEXT: RAW_KEY})
        custody = KmsKeyCustody(kms_client=kms)

        with operator_credentials(settings(operator_key_encrypted=CIPHERTEXT_B64), custody=custody) as credentials:
            self.assertEqual(credentials.private_key, RAW_KEY)

        self.assertTrue(credentials.released)
        self.assertEqual(kms.calls[0]["CiphertextBlob"], CIPHERTEXT)

    def test_hex_plaintext_is_accepted(self):
        kms = FakeKmsClient({CIPHERTEXT: ("0x" + RAW_KEY.hex()).encode("ascii")})

        with operator_credentials(
            settings(operator_key_encrypted=CIPHERTEXT_B64), custody=KmsKeyCustody(kms_client=kms)
        ) as credentials:
            self.assertEqual(credentials.private_key, RAW_KEY)

    def test_key_is_wiped_when_operation_fails(self):
        kms = FakeKmsClient({CIPHERTEXT: RAW_KEY})
        captured = []

        with self.assertRaises(RuntimeError):
            with operator_credentials(
                settings(operator_key_encrypted=CIPHERTEXT_B64), custody=KmsKeyCustody(kms_client=kms)
            ) as credentials:
                captured.append(credentials)
                raise RuntimeError("ledger exploded")

        self.assertTrue(captured[0].released)

    def test_decrypt_failure_is_configuration_error(self):
        kms = FakeKmsClient({})

        with self.assertRaises(ConfigurationError):
            with operator_credentials(settings(operator_key_encrypted=CIPHERTEXT_B64), custody=KmsKeyCustody(kms_client=kms)):
                pass

    def test_unexpected_plaintext_is_configuration_error(self):
        kms = FakeKmsClient({CIPHERTEXT: b"short"})

        with self.assertRaises(ConfigurationError):
            with operator_credentials(settings(operator_key_encrypted=CIPHERTEXT_B64), custody=KmsKeyCustody(kms_client=kms)):
                pass

    def test_provider_decrypts_per_call(self):
        kms = FakeKmsClient({CIPHERTEXT: RAW_KEY})
        provide = credentials_provider(settings(operator_key_encrypted=CIPHERTEXT_B64), custody=KmsKeyCustody(kms_client=kms))

        with provide():
            pass
        with provide():
            pass

        self.assertEqual(len(kms.calls), 2)


if __name__ == "__main__":
    unittest.main()
