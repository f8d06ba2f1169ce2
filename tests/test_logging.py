"""Log hygiene for credential-bearing messages."""

from mailsync.utils.logging import redact


class TestRedact:
    """Credential values never reach a sink."""

    def test_masks_tokens_and_passwords(self):
        line = redact("refresh failed: {'access_token': 'ya29.abc', 'password': 'hunter2'}")

        assert "ya29.abc" not in line
        assert "hunter2" not in line
        assert "'access_token': '***'" in line

    def test_masks_query_string_values(self):
        assert redact("GET /webhooks/outlook?validationToken=abc123&x=1") == "GET /webhooks/outlook?validationToken=***&x=1"

    def test_leaves_plain_messages_alone(self):
        message = "Synced account 42 (outlook, delta): fetched=3 inserted=2"
        assert redact(message) == message
