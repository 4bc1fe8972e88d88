from datetime import datetime, timezone

import pytest

from sweep_signal_bot.sessions import DEFAULT_SESSIONS, current_session, level_sessions, session_warning


def _at(h, m=0):
    return datetime(2024, 3, 5, h, m, tzinfo=timezone.utc)


def test_current_session():
    assert current_session(DEFAULT_SESSIONS, _at(3)) == "ASIAN"
    # overlap hour goes to the earlier session
    assert current_session(DEFAULT_SESSIONS, _at(7)) == "ASIAN"
    assert current_session(DEFAULT_SESSIONS, _at(10)) == "LONDON"
    assert current_session(DEFAULT_SESSIONS, _at(18)) == "NEW_YORK"
    assert current_session(DEFAULT_SESSIONS, _at(23)) == "OFF_HOURS"


def test_session_warning_window():
    assert session_warning(_at(13, 30)) == {"active": False}

    pre = session_warning(_at(14, 10))
    assert pre["active"] and pre["type"] == "PRE_MARKET"
    assert pre["minutes_to_open"] == 20

    opened = session_warning(_at(14, 40))
    assert opened["type"] == "MARKET_OPEN"
    assert opened["minutes_to_open"] == 0

    assert session_warning(_at(14, 50)) == {"active": False}


def test_level_sessions_lookup():
    wins = level_sessions(DEFAULT_SESSIONS, ["asian", "LONDON"])
    assert [w.name for w in wins] == ["ASIAN", "LONDON"]
    with pytest.raises(ValueError):
        level_sessions(DEFAULT_SESSIONS, ["SYDNEY"])
