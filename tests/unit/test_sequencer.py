"""Unit tests for EmissionSequencer."""

from browsermonitor.capture.sequencer import EmissionSequencer


class TestEmissionSequencer:

    def test_emit_commits_immediately_when_nothing_pending(self):
        out = []
        seq = EmissionSequencer("test")
        seq.emit(lambda: out.append("a"))
        assert out == ["a"]
        assert seq.pending == 0

    def test_later_resolution_waits_for_earlier_slot(self):
        out = []
        seq = EmissionSequencer("test")
        first = seq.reserve()
        seq.emit(lambda: out.append("second"))
        assert out == []

        seq.resolve(first, lambda: out.append("first"))
        assert out == ["first", "second"]

    def test_dropped_slot_releases_followers(self):
        out = []
        seq = EmissionSequencer("test")
        first = seq.reserve()
        second = seq.reserve()
        seq.resolve(second, lambda: out.append("second"))
        seq.resolve(first, None)
        assert out == ["second"]

    def test_resolve_twice_is_ignored(self):
        out = []
        seq = EmissionSequencer("test")
        slot = seq.reserve()
        seq.resolve(slot, lambda: out.append("x"))
        seq.resolve(slot, lambda: out.append("y"))
        assert out == ["x"]

    def test_close_commits_resolved_slots_and_drops_unresolved(self):
        out = []
        seq = EmissionSequencer("test")
        stuck = seq.reserve()
        seq.emit(lambda: out.append("queued"))
        seq.close()
        assert out == ["queued"]
        assert seq.pending == 0

        seq.resolve(stuck, lambda: out.append("late"))
        seq.emit(lambda: out.append("after close"))
        assert out == ["queued"]
