import unittest

from webmail.addressing import (
    KIND_DIRECT,
    KIND_INVALID,
    KIND_UNSUPPORTED,
    Recipient,
    is_direct_identifier,
    parse_recipient,
    shorten_for_display,
)

ADDRESS = "0xABCDEF0123456789000000000000000000000001"


class ParseRecipientTests(unittest.TestCase):
    def test_bridge_alias_maps_to_direct_local_part(self):
        recipient = parse_recipient("alice.eth@xmtp.mx")

        self.assertEqual(recipient.kind, KIND_DIRECT)
        self.assertEqual(recipient.identifier, "alice.eth")
        self.assertEqual(recipient.alias, "alice.eth@xmtp.mx")
        self.assertTrue(recipient.is_bridged)

    def test_bridge_domain_is_case_insensitive(self):
        recipient = parse_recipient("  Bob@XMTP.MX ")

        self.assertEqual(recipient, Recipient.direct("Bob", alias="Bob@XMTP.MX"))

    def test_plain_address_is_direct_literal(self):
        recipient = parse_recipient(ADDRESS)

        self.assertEqual(recipient.kind, KIND_DIRECT)
        self.assertEqual(recipient.identifier, ADDRESS)
        self.assertFalse(recipient.is_bridged)

    def test_name_without_domain_is_direct(self):
        self.assertEqual(parse_recipient("vitalik.eth"), Recipient.direct("vitalik.eth"))

    def test_empty_input_is_invalid(self):
        for value in ("", "   ", None):
            recipient = parse_recipient(value)
            self.assertEqual(recipient.kind, KIND_INVALID)
            self.assertEqual(recipient.reason, "Recipient is required.")

    def test_missing_local_part_or_domain_is_invalid(self):
        for value in ("@xmtp.mx", "alice@", " @ "):
            recipient = parse_recipient(value)
            self.assertEqual(recipient.kind, KIND_INVALID, value)
            self.assertEqual(recipient.reason, "Invalid email address.")

    def test_foreign_domain_is_unsupported_not_invalid(self):
        recipient = parse_recipient("someone@gmail.com")

        self.assertEqual(recipient.kind, KIND_UNSUPPORTED)
        self.assertNotEqual(recipient.kind, KIND_DIRECT)
        self.assertEqual(recipient.domain, "gmail.com")
        self.assertEqual(recipient.address, "someone@gmail.com")
        self.assertIsNone(recipient.reason)

    def test_split_uses_last_separator(self):
        recipient = parse_recipient("team@corp@xmtp.mx")

        self.assertEqual(recipient.kind, KIND_DIRECT)
        self.assertEqual(recipient.identifier, "team@corp")

    def test_custom_bridge_domain(self):
        self.assertEqual(parse_recipient("carol@mail.test", bridge_domain="mail.test").identifier, "carol")
        self.assertEqual(parse_recipient("carol@xmtp.mx", bridge_domain="mail.test").kind, KIND_UNSUPPORTED)


class DisplayHelperTests(unittest.TestCase):
    def test_direct_identifier_format(self):
        self.assertTrue(is_direct_identifier(ADDRESS))
        self.assertTrue(is_direct_identifier(ADDRESS.lower()))
        self.assertFalse(is_direct_identifier(ADDRESS[:-1]))
        self.assertFalse(is_direct_identifier(ADDRESS + "0"))
        self.assertFalse(is_direct_identifier(ADDRESS + "\n"))
        self.assertFalse(is_direct_identifier("0x" + "g" * 40))
        self.assertFalse(is_direct_identifier(None))

    def test_shorten_keeps_prefix_and_suffix(self):
        self.assertEqual(shorten_for_display(ADDRESS), "0xABCD…0001")
        self.assertEqual(shorten_for_display(ADDRESS, keep_chars=6), "0xABCDEF…000001")

    def test_shorten_leaves_other_values_alone(self):
        self.assertEqual(shorten_for_display("alice.eth"), "alice.eth")
        self.assertEqual(shorten_for_display("conv_1"), "conv_1")

    def test_shorten_with_zero_chars(self):
        self.assertEqual(shorten_for_display(ADDRESS, keep_chars=0), "0x…")
        self.assertEqual(shorten_for_display(ADDRESS, keep_chars=-3), "0x…")


if __name__ == "__main__":
    unittest.main()
