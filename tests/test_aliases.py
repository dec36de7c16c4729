"""Tests for sender alias resolution and message rewriting."""

from roombot.aliases import compile_message_aliases, resolve_message, sender_label


class TestSenderLabel:
    def test_local_part_is_default(self):
        assert sender_label("@alice:example.org", {}) == "alice"

    def test_override_by_full_id(self):
        assert sender_label("@alice:example.org", {"@alice:example.org": "Alice"}) == "Alice"

    def test_malformed_sender_has_no_label(self):
        assert sender_label("alice", {}) is None
        assert sender_label("@:example.org", {}) is None

    def test_override_rescues_malformed_sender(self):
        assert sender_label("alice", {"alice": "Alice"}) == "Alice"


class TestResolveMessage:
    def test_plain_text(self):
        message = resolve_message("@bob:example.org", "hi", "m.text", {})
        assert message == {"from": "bob", "message": "hi"}

    def test_malformed_sender_is_dropped(self):
        assert resolve_message("bob", "hi", "m.text", {}) is None

    def test_typographic_quotes_are_normalized(self):
        message = resolve_message("@bob:example.org", "‘it’s’ “quoted”", "m.text", {})
        assert message["message"] == "'it's' \"quoted\""

    def test_first_matching_rule_wins(self):
        rules = compile_message_aliases({
            r"^<carol> (.*)$": "carol",
            r"^<(.*)>": "never",
            r"^(.*)$": "everything",
        })
        message = resolve_message("@bridge:example.org", "<carol> hello there", "m.text", {}, rules)
        assert message == {"from": "carol", "message": "hello there"}

    def test_later_rule_applies_when_earlier_misses(self):
        rules = compile_message_aliases({
            r"^<carol> (.*)$": "carol",
            r"^\[dave\] (.*)$": "dave",
        })
        message = resolve_message("@bridge:example.org", "[dave] yo", "m.text", {}, rules)
        assert message == {"from": "dave", "message": "yo"}

    def test_rule_with_empty_group_does_not_fire(self):
        rules = compile_message_aliases({r"^<carol> (.*)$": "carol"})
        message = resolve_message("@bridge:example.org", "<carol> ", "m.text", {}, rules)
        assert message == {"from": "bridge", "message": "<carol> "}

    def test_emote_is_prefixed_with_label(self):
        message = resolve_message("@bob:example.org", "waves", "m.emote", {})
        assert message["message"] == "*bob waves"

    def test_emote_uses_rewritten_label(self):
        rules = compile_message_aliases({r"^<carol> (.*)$": "carol"})
        message = resolve_message("@bridge:example.org", "<carol> waves", "m.emote", {}, rules)
        assert message == {"from": "carol", "message": "*carol waves"}

    def test_resolution_is_idempotent(self):
        rules = compile_message_aliases({r"^<carol> (.*)$": "carol"})
        args = ("@bridge:example.org", "<carol> “hi”", "m.text", {"@x:y": "X"}, rules)
        assert resolve_message(*args) == resolve_message(*args)
