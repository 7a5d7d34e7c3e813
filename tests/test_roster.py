from models.game import Participant
from services.roster import ABSENT_PLAYER_NAME, InMemoryRoster, PlayerNameCache

from helpers import make_roster


class TestPlayerNameCache:

    def test_roster_name(self):
        cache = PlayerNameCache(make_roster())
        assert cache.name_for("p1") == "Player p1"

    def test_ai_player(self):
        cache = PlayerNameCache(make_roster())
        assert cache.name_for("ai_3") == "<AI 3>"
        assert cache.name_for("ai_x") == ABSENT_PLAYER_NAME

    def test_unknown_player(self):
        cache = PlayerNameCache(make_roster())
        assert cache.name_for("ghost") == "<absent player>"

    def test_name_kept_after_player_leaves(self):
        """Test a participant seen once keeps their name after leaving the roster"""
        roster = make_roster()
        cache = PlayerNameCache(roster)
        cache.name_for("p2")

        roster.replace([p for p in roster.participants() if p.id != "p2"])

        assert cache.name_for("p2") == "Player p2"
        assert len(cache) == 1

    def test_absent_result_is_memoized(self):
        roster = make_roster()
        cache = PlayerNameCache(roster)
        cache.name_for("late")

        roster.replace(roster.participants() + [Participant(id="late", display_name="Latecomer")])

        assert cache.name_for("late") == ABSENT_PLAYER_NAME


class TestInMemoryRoster:

    def test_replace_notifies_and_keeps_local_id(self):
        roster = make_roster(local_id="p0")
        calls = []
        roster.subscribe(lambda: calls.append(1))

        roster.replace([Participant(id="p0", display_name="Zero")])

        assert calls == [1]
        assert roster.local_participant_id == "p0"
        assert roster.get_participant("p0").display_name == "Zero"
        assert roster.get_participant("p1") is None

    def test_unsubscribe(self):
        roster = InMemoryRoster("a")
        calls = []
        unsubscribe = roster.subscribe(lambda: calls.append(1))
        unsubscribe()

        roster.replace([], local_id="b")

        assert calls == []
        assert roster.local_participant_id == "b"
