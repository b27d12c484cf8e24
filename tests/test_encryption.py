import unittest
from unittest import mock

from cryptography.fernet import Fernet

from app.core.config import settings as core_settings
from app.services.encryption import (
    EncryptionConfigError,
    decrypt,
    encrypt,
    generate_signature,
    generate_token,
    hash_value,
    mask_value,
    verify_hash,
    verify_signature,
)


class TestFieldEncryption(unittest.TestCase):
    def setUp(self):
        self.key = Fernet.generate_key().decode("utf-8")
        patcher = mock.patch.object(core_settings, "ENCRYPTION_KEY", self.key)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_round_trip(self):
        token = encrypt("Routing 021000021 / Account 123456789")

        self.assertTrue(token.startswith("enc:v1:"))
        self.assertNotIn("123456789", token)
        self.assertEqual(decrypt(token), "Routing 021000021 / Account 123456789")

    def test_encrypt_is_idempotent_for_encrypted_values(self):
        token = encrypt("secret")

        self.assertEqual(encrypt(token), token)

    def test_empty_values_pass_through(self):
        self.assertEqual(encrypt(""), "")
        self.assertEqual(decrypt(None), "")

    def test_tampered_token_is_rejected(self):
        token = encrypt("secret")
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        with self.assertRaises(ValueError):
            decrypt(tampered)

    def test_other_key_cannot_decrypt(self):
        token = encrypt("secret")

        with mock.patch.object(core_settings, "ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8")):
            with self.assertRaises(ValueError):
                decrypt(token)

    def test_plaintext_is_not_accepted_as_ciphertext(self):
        with self.assertRaises(ValueError):
            decrypt("plain value")

    def test_missing_key_is_a_config_error(self):
        with mock.patch.object(core_settings, "ENCRYPTION_KEY", ""):
            with self.assertRaises(EncryptionConfigError):
                encrypt("secret")

    def test_invalid_key_is_a_config_error(self):
        with mock.patch.object(core_settings, "ENCRYPTION_KEY", "not-a-fernet-key"):
            with self.assertRaises(EncryptionConfigError):
                encrypt("secret")

    def test_hash_verification(self):
        hashed = hash_value("123-45-6789")

        self.assertTrue(verify_hash("123-45-6789", hashed))
        self.assertFalse(verify_hash("123-45-6780", hashed))
        self.assertFalse(verify_hash("123-45-6789", "garbage!"))
        self.assertNotEqual(hash_value("123-45-6789"), hashed)

    def test_signature_verification(self):
        signature = generate_signature("load:42:2500.00")

        self.assertTrue(verify_signature("load:42:2500.00", signature))
        self.assertTrue(verify_signature("load:42:2500.00", signature.upper()))
        self.assertFalse(verify_signature("load:42:2600.00", signature))

    def test_masking(self):
        self.assertEqual(mask_value("123456789012"), "****9012")
        self.assertEqual(mask_value("short"), "****")
        self.assertEqual(mask_value(None), "")

    def test_generated_tokens_are_unique(self):
        self.assertNotEqual(generate_token(), generate_token())
        self.assertGreaterEqual(len(generate_token(16)), 16)


if __name__ == "__main__":
    unittest.main()
