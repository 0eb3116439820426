import json
import unittest

from webmail.config import WebmailConfig
from webmail.provider_check import PROVIDER_INVALID, PROVIDER_MISSING, PROVIDER_VALID
from webmail.startup import (
    CLIENT_FAILED,
    CLIENT_IDLE,
    CLIENT_INITIALIZING,
    CLIENT_READY,
    SECURITY_LOADING,
    SECURITY_READY,
    WALLET_CONNECTED,
    ReadinessSequencer,
)
from webmail.status import (
    TONE_ERROR,
    TONE_NEUTRAL,
    TONE_OK,
    TONE_PENDING,
    diagnostics_text,
    redact_mapping,
    redact_text,
    status_items,
)


async def _noop(*_args):
    return None


def make_sequencer(provider_id="secret-client-id"):
    return ReadinessSequencer(
        WebmailConfig(network_env="dev", identity_provider_id=provider_id),
        load_security_module=_noop,
        create_client=_noop,
    )


class StatusItemsTests(unittest.TestCase):
    def test_initial_rows(self):
        rows = status_items(make_sequencer())

        self.assertEqual(
            [label for label, _, _ in rows],
            ["Environment", "Security module", "Identity provider id", "Wallet", "Network client", "Conversations"],
        )
        self.assertEqual(rows[0], ("Environment", "dev", TONE_NEUTRAL))
        self.assertEqual(rows[1], ("Security module", "Loading", TONE_PENDING))
        self.assertEqual(rows[2], ("Identity provider id", "Checking", TONE_PENDING))
        self.assertEqual(rows[3], ("Wallet", "Not connected", TONE_NEUTRAL))
        self.assertEqual(rows[4], ("Network client", "Waiting: security module not ready", TONE_NEUTRAL))
        self.assertEqual(rows[5], ("Conversations", "-", TONE_NEUTRAL))

    def test_stalled_phases_say_so(self):
        sequencer = make_sequencer()
        sequencer.security_stalled = True
        self.assertEqual(status_items(sequencer)[1][1], "Loading (taking longer than usual)")

        sequencer.client_state = CLIENT_INITIALIZING
        sequencer.client_stalled = True
        self.assertEqual(
            status_items(sequencer)[4],
            ("Network client", "Initializing (taking longer than usual)", TONE_PENDING),
        )

    def test_ready_rows(self):
        sequencer = make_sequencer()
        sequencer.security_state = SECURITY_READY
        sequencer.provider_state = PROVIDER_VALID
        sequencer.wallet_state = WALLET_CONNECTED
        sequencer.wallet_address = "0x" + "a" * 40
        sequencer.client_state = CLIENT_READY

        rows = status_items(sequencer, conversations_count=3)

        self.assertEqual([tone for _, _, tone in rows[1:]], [TONE_OK] * 5)
        self.assertEqual(rows[3][1], "0xaaaa…aaaa")
        self.assertEqual(rows[5][1], "3")

    def test_error_rows(self):
        sequencer = make_sequencer(provider_id="")
        self.assertEqual(status_items(sequencer)[2][2], TONE_ERROR)
        self.assertEqual(sequencer.provider_state, PROVIDER_MISSING)

        sequencer.provider_state = PROVIDER_INVALID
        sequencer.provider_error = "HTTP 401"
        sequencer.client_state = CLIENT_FAILED
        sequencer.client_error = "boom"
        rows = status_items(sequencer)

        self.assertEqual(rows[2], ("Identity provider id", "Invalid: HTTP 401", TONE_ERROR))
        self.assertEqual(rows[4], ("Network client", "Failed: boom", TONE_ERROR))


class DiagnosticsTests(unittest.TestCase):
    def test_diagnostics_redact_provider_id(self):
        sequencer = make_sequencer()
        sequencer.client_error = "request failed: client_id=secret-client-id"

        text = diagnostics_text(sequencer, conversations_count=2)
        payload = json.loads(text)

        self.assertNotIn("secret-client-id", text)
        self.assertEqual(payload["identity_provider_id"], "[REDACTED]")
        self.assertEqual(payload["network_env"], "dev")
        self.assertEqual(payload["security"]["state"], SECURITY_LOADING)
        self.assertEqual(payload["client"]["state"], CLIENT_IDLE)
        self.assertEqual(payload["conversations"], 2)

    def test_diagnostics_keep_missing_id_visible(self):
        payload = json.loads(diagnostics_text(make_sequencer(provider_id="")))

        self.assertEqual(payload["identity_provider_id"], "")

    def test_redact_text_patterns(self):
        self.assertEqual(redact_text("Authorization: Bearer abc.def"), "Authorization: Bearer [REDACTED]")
        self.assertEqual(redact_text('{"token": "xyz"}'), '{"token": "[REDACTED]"}')
        self.assertEqual(redact_text("nothing to see"), "nothing to see")

    def test_redact_mapping_is_deep(self):
        redacted = redact_mapping({"outer": {"token": "abc", "note": "client_id=zzz"}, "count": 1})

        self.assertEqual(redacted, {"outer": {"token": "[REDACTED]", "note": "client_id=[REDACTED]"}, "count": 1})


if __name__ == "__main__":
    unittest.main()
