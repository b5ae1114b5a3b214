import threading

from embed_gateway.services.otp_store import (
    CODE_MAX,
    CODE_MIN,
    OtpStore,
    VerificationOutcome,
    generate_code,
    normalize_identity,
)


def test_generated_codes_are_six_digits_in_range():
    for _ in range(500):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()
        assert CODE_MIN <= int(code) <= CODE_MAX


def test_issue_then_verify_with_mocked_code(fake_clock):
    store = OtpStore(clock=fake_clock, code_factory=lambda: "123456")

    assert store.issue("alice@example.com") == "123456"
    assert store.verify("alice@example.com", "654321") == VerificationOutcome.MISMATCH
    assert store.verify("alice@example.com", "123456") == VerificationOutcome.VERIFIED
    assert store.verify("alice@example.com", "123456") == VerificationOutcome.NO_RECORD


def test_verify_unknown_identity_returns_no_record():
    store = OtpStore()
    assert store.verify("nobody@example.com", "123456") == VerificationOutcome.NO_RECORD


def test_mismatch_keeps_the_record(fake_clock):
    store = OtpStore(clock=fake_clock, code_factory=lambda: "111111")
    store.issue("bob@example.com")

    for _ in range(3):
        assert store.verify("bob@example.com", "000000") == VerificationOutcome.MISMATCH
    assert store.peek("bob@example.com") is not None
    assert store.verify("bob@example.com", "111111") == VerificationOutcome.VERIFIED


def test_expired_record_is_removed_on_verify(fake_clock):
    store = OtpStore(ttl_seconds=300, clock=fake_clock, code_factory=lambda: "222222")
    store.issue("carol@example.com")

    fake_clock.advance(301)
    assert store.verify("carol@example.com", "222222") == VerificationOutcome.EXPIRED
    assert store.verify("carol@example.com", "222222") == VerificationOutcome.NO_RECORD


def test_record_is_still_valid_at_the_expiry_instant(fake_clock):
    store = OtpStore(ttl_seconds=300, clock=fake_clock, code_factory=lambda: "333333")
    store.issue("dave@example.com")

    fake_clock.advance(300)
    assert store.verify("dave@example.com", "333333") == VerificationOutcome.VERIFIED


def test_reissue_replaces_previous_code(fake_clock):
    codes = iter(["111111", "222222"])
    store = OtpStore(clock=fake_clock, code_factory=lambda: next(codes))

    store.issue("erin@example.com")
    fake_clock.advance(200)
    store.issue("erin@example.com")

    assert len(store) == 1
    assert store.verify("erin@example.com", "111111") == VerificationOutcome.MISMATCH
    # The fresh record carries a full lifetime from the second issue.
    fake_clock.advance(250)
    assert store.verify("erin@example.com", "222222") == VerificationOutcome.VERIFIED


def test_identities_are_normalized(fake_clock):
    store = OtpStore(clock=fake_clock, code_factory=lambda: "444444")
    store.issue("  Frank@Example.COM ")

    assert normalize_identity("  Frank@Example.COM ") == "frank@example.com"
    assert store.verify("frank@example.com", " 444444 ") == VerificationOutcome.VERIFIED


def test_concurrent_verifies_succeed_exactly_once(fake_clock):
    store = OtpStore(clock=fake_clock, code_factory=lambda: "555555")
    store.issue("grace@example.com")

    workers = 16
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def _verify():
        barrier.wait()
        outcome = store.verify("grace@example.com", "555555")
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_verify) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(VerificationOutcome.VERIFIED) == 1
    assert outcomes.count(VerificationOutcome.NO_RECORD) == workers - 1


def test_purge_expired_drops_only_stale_records(fake_clock):
    store = OtpStore(ttl_seconds=60, clock=fake_clock)
    store.issue("old@example.com")
    fake_clock.advance(30)
    store.issue("new@example.com")

    fake_clock.advance(45)
    assert store.purge_expired() == 1
    assert store.peek("old@example.com") is None
    assert store.peek("new@example.com") is not None


def test_peek_waits_for_the_identity_lock(fake_clock):
    store = OtpStore(clock=fake_clock, code_factory=lambda: "444444")
    store.issue("Erin@Example.com")
    seen = []

    lock = store._lock_for(normalize_identity("erin@example.com"))
    with lock:
        reader = threading.Thread(target=lambda: seen.append(store.peek(" ERIN@example.com ")))
        reader.start()
        reader.join(0.2)
        assert reader.is_alive()
        assert seen == []
    reader.join(5)

    assert seen[0].code == "444444"
    store.verify("erin@example.com", "444444")
    assert store.peek("erin@example.com") is None
