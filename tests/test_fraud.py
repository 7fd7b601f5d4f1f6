import datetime

from playledger.fraud import FraudDetector, evaluate, merge
from playledger.models.play import FraudReason, FraudVerdict, PlayContext

BROWSER_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)"


def _context(**overrides):
    values = {
        "duration_ms": 70000,
        "track_full_duration_ms": 120000,
        "user_agent": BROWSER_UA,
    }
    values.update(overrides)
    return PlayContext(**values)


def test_duration_below_absolute_floor_is_flagged():
    verdict = evaluate(_context(duration_ms=19999))

    assert verdict.suspicious is True
    assert FraudReason.INSUFFICIENT_LISTEN_DURATION in verdict.reasons
    assert verdict.score == 1


def test_duration_exactly_at_floor_is_not_flagged():
    verdict = evaluate(_context(duration_ms=20000))

    assert FraudReason.INSUFFICIENT_LISTEN_DURATION not in verdict.reasons
    assert verdict.suspicious is False


def test_floor_is_the_smaller_of_twenty_seconds_and_half_the_track():
    # 120 s track: floor is 20 s, so 39.999 s passes
    assert evaluate(_context(duration_ms=39999)).suspicious is False


def test_half_track_rule_dominates_for_short_tracks():
    short = {"track_full_duration_ms": 30000}

    assert FraudReason.INSUFFICIENT_LISTEN_DURATION in evaluate(_context(duration_ms=14999, **short)).reasons
    assert evaluate(_context(duration_ms=15000, **short)).suspicious is False


def test_bot_user_agent_is_flagged_case_insensitively():
    assert evaluate(_context(user_agent="Googlebot/2.1")).reasons == (FraudReason.BOT_USER_AGENT,)
    assert evaluate(_context(user_agent="SomeBOT crawler")).suspicious is True
    assert evaluate(_context(user_agent=BROWSER_UA)).suspicious is False


def test_local_ip_only_checked_against_raw_address():
    assert evaluate(_context(client_ip="127.0.0.1")).reasons == (FraudReason.LOCAL_IP_ADDRESS,)
    assert evaluate(_context(client_ip="::1")).suspicious is True
    assert evaluate(_context(client_ip="0.0.0.0")).suspicious is True
    assert evaluate(_context(client_ip="203.0.113.45")).suspicious is False
    assert evaluate(_context(client_ip=None)).suspicious is False


def test_all_matching_reasons_are_recorded_with_binary_score():
    verdict = evaluate(_context(duration_ms=5000, track_full_duration_ms=60000,
                                user_agent="Botty/1.0", client_ip="127.0.0.1"))

    assert verdict.reasons == (
        FraudReason.INSUFFICIENT_LISTEN_DURATION,
        FraudReason.BOT_USER_AGENT,
        FraudReason.LOCAL_IP_ADDRESS,
    )
    assert verdict.score == 1


def test_track_not_found_and_duplicate_window_rules():
    now = datetime.datetime(2024, 7, 10, 12, 0, tzinfo=datetime.UTC)

    assert evaluate(_context(track_found=False)).reasons == (FraudReason.TRACK_NOT_FOUND,)
    inside = evaluate(_context(timestamp=now, previous_window_ends_at=now + datetime.timedelta(seconds=1)))
    assert inside.reasons == (FraudReason.DUPLICATE_PLAY_WITHIN_WINDOW,)
    at_edge = evaluate(_context(timestamp=now, previous_window_ends_at=now))
    assert at_edge.suspicious is False


def test_legitimate_play_has_no_reasons():
    verdict = evaluate(_context(duration_ms=45000, track_full_duration_ms=60000, client_ip="203.0.113.45"))

    assert verdict == FraudVerdict(suspicious=False, reasons=(), score=0)


def test_dedupe_window_has_thirty_second_minimum():
    detector = FraudDetector()

    assert detector.dedupe_window_ms(60000) == 30000
    assert detector.dedupe_window_ms(240000) == 60000


def test_merge_unions_reasons_and_keeps_max_score():
    first = FraudVerdict(True, (FraudReason.BOT_USER_AGENT,), 1)
    second = FraudVerdict(True, (FraudReason.INSUFFICIENT_LISTEN_DURATION, FraudReason.BOT_USER_AGENT), 1)
    clean = FraudVerdict(False, (), 0)

    merged = merge(first, second, clean)

    assert merged.reasons == (FraudReason.BOT_USER_AGENT, FraudReason.INSUFFICIENT_LISTEN_DURATION)
    assert merged.score == 1
    assert merged.suspicious is True
    assert merge(clean, first).suspicious is True


def test_detector_reads_thresholds_from_settings(settings):
    detector = FraudDetector.from_settings(settings.model_copy(update={"MIN_LISTEN_MS": 10000}))

    assert detector.min_listen_duration_ms(120000) == 10000
