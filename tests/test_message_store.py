"""Single-slot inbox: sanitizing, lazy expiry and the overlay wrap."""

from message_store import MAX_MESSAGE_LEN, MessageStore, overlay_lines, sanitize


class TestSubmit:

    def test_long_message_truncated_to_100(self, store):
        store.submit("x" * 150)
        assert len(store.text) == MAX_MESSAGE_LEN == 100

    def test_angle_brackets_escaped(self, store):
        store.submit("<b>hi</b>")
        assert "&lt;b&gt;hi&lt;/b&gt;" in store.text

    def test_truncation_happens_before_escaping(self):
        text = sanitize("a" * 99 + "<>")
        assert text == "a" * 99 + "&lt;"

    def test_ampersand_untouched(self):
        assert sanitize("fish & chips") == "fish & chips"

    def test_new_submission_overwrites(self, store, clock):
        store.submit("first")
        clock.now += 1000
        store.submit("second")
        assert store.text == "second"
        assert store.received_at == clock.now

    def test_submit_returns_stored_text(self, store):
        assert store.submit("<3") == "&lt;3"


class TestVisibility:

    def test_visible_just_before_expiry(self, store, clock):
        store.submit("Hello there")
        assert store.peek(store.received_at + 5000 - 1) == "Hello there"

    def test_hidden_and_cleared_after_expiry(self, store, clock):
        store.submit("Hello there")
        received = store.received_at
        assert store.peek(received + 5000 + 1) is None
        assert store.text == ""
        # Stays gone even if asked about an earlier instant
        assert store.peek(received) is None

    def test_hidden_exactly_at_duration(self, store):
        store.submit("bye", now=0)
        assert store.peek(5000) is None

    def test_peek_defaults_to_clock(self, store, clock):
        store.submit("tick")
        clock.now += 4000
        assert store.peek() == "tick"
        clock.now += 2000
        assert store.peek() is None

    def test_empty_store(self, store):
        assert store.peek() is None

    def test_custom_duration(self):
        s = MessageStore(display_duration=100, clock=lambda: 0)
        s.submit("short")
        assert s.peek(99) == "short"
        assert s.peek(100) is None


class TestClear:

    def test_clear_ignores_expiry(self, store):
        store.submit("oops")
        store.clear()
        assert store.text == ""
        assert store.peek() is None

    def test_clear_when_empty(self, store):
        store.clear()
        assert store.text == ""


class TestOverlay:

    def test_two_lines_of_thirty(self):
        text = "".join(chr(ord("a") + i % 26) for i in range(70))
        line1, line2 = overlay_lines(text)
        assert line1 == text[:30]
        assert line2 == text[30:60]

    def test_short_text(self):
        assert overlay_lines("hi") == ["hi", ""]
