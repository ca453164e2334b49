"""Tests for the per-user send cooldown and content validation."""
import pytest

from casino_chat.client.cooldown import CooldownLimiter
from casino_chat.client.errors import RateLimitError, ValidationError
from casino_chat.client.validation import utf16_length, validate_content


class TestCooldownLimiter:
    def test_first_send_allowed(self):
        limiter = CooldownLimiter(limit=1, window=2.0)
        decision = limiter.attempt("u1", now=100.0)
        assert decision.allowed
        assert decision.reset_at == 102.0
        assert decision.remaining == 0

    def test_second_send_inside_window_refused(self):
        limiter = CooldownLimiter(limit=1, window=2.0)
        limiter.attempt("u1", now=100.0)
        decision = limiter.attempt("u1", now=101.999)
        assert not decision.allowed
        assert decision.reset_at == 102.0

    def test_send_allowed_exactly_when_window_ends(self):
        limiter = CooldownLimiter(limit=1, window=2.0)
        limiter.attempt("u1", now=100.0)
        decision = limiter.attempt("u1", now=102.0)
        assert decision.allowed
        assert decision.reset_at == 104.0

    def test_refused_attempt_does_not_extend_window(self):
        limiter = CooldownLimiter(limit=1, window=2.0)
        limiter.attempt("u1", now=100.0)
        limiter.attempt("u1", now=101.0)
        limiter.attempt("u1", now=101.5)
        assert limiter.attempt("u1", now=102.0).allowed

    def test_limit_counts_within_window(self):
        limiter = CooldownLimiter(limit=3, window=10.0)
        results = [limiter.attempt("u1", now=100.0 + i).allowed for i in range(4)]
        assert results == [True, True, True, False]

    def test_users_are_independent(self):
        limiter = CooldownLimiter(limit=1, window=2.0)
        assert limiter.attempt("u1", now=100.0).allowed
        assert limiter.attempt("u2", now=100.5).allowed
        assert not limiter.attempt("u1", now=100.5).allowed

    def test_uses_injected_clock(self):
        now = [50.0]
        limiter = CooldownLimiter(limit=1, window=2.0, clock=lambda: now[0])
        assert limiter.attempt("u1").allowed
        assert not limiter.attempt("u1").allowed
        now[0] = 52.0
        assert limiter.attempt("u1").allowed

    def test_peek_reports_state_without_recording(self):
        limiter = CooldownLimiter(limit=1, window=2.0)
        fresh = limiter.peek("u1")
        assert fresh.window_start_at is None
        assert fresh.remaining(100.0) == 1

        limiter.attempt("u1", now=100.0)
        state = limiter.peek("u1")
        assert state.is_cooling_down(101.0)
        assert state.remaining_time(101.0) == pytest.approx(1.0)
        assert not state.is_cooling_down(102.0)
        assert state.remaining_time(102.0) == 0.0

        # peek hands out a copy
        state.sent_in_window = 0
        assert not limiter.attempt("u1", now=101.0).allowed

    def test_reset(self):
        limiter = CooldownLimiter(limit=1, window=2.0)
        limiter.attempt("u1", now=100.0)
        limiter.attempt("u2", now=100.0)
        limiter.reset("u1")
        assert limiter.attempt("u1", now=100.1).allowed
        assert not limiter.attempt("u2", now=100.1).allowed
        limiter.reset()
        assert limiter.attempt("u2", now=100.2).allowed

    @pytest.mark.parametrize("limit,window", [(0, 2.0), (1, 0.0), (1, -1.0)])
    def test_invalid_configuration(self, limit, window):
        with pytest.raises(ValueError):
            CooldownLimiter(limit=limit, window=window)


class TestRateLimitError:
    def test_carries_reset_at(self):
        error = RateLimitError(reset_at=110.0)
        assert error.reset_at == 110.0
        assert error.remaining(now=108.5) == pytest.approx(1.5)
        assert error.remaining(now=200.0) == 0.0
        assert error.to_dict()["type"] == "rate_limited"


class TestValidateContent:
    def test_trims_whitespace(self):
        assert validate_content("  gl hf \n") == "gl hf"

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_empty_rejected(self, content):
        with pytest.raises(ValidationError, match="cannot be empty"):
            validate_content(content)

    def test_exactly_max_length_accepted(self):
        assert len(validate_content("a" * 500)) == 500

    def test_over_max_length_rejected(self):
        with pytest.raises(ValidationError, match="cannot exceed 500"):
            validate_content("a" * 501)

    def test_length_checked_after_trim(self):
        assert validate_content("  " + "a" * 500 + "  ") == "a" * 500

    def test_length_counted_in_utf16_units(self):
        # Each emoji outside the BMP is a surrogate pair
        assert utf16_length("🎰") == 2
        assert validate_content("🎰" * 250) == "🎰" * 250
        with pytest.raises(ValidationError):
            validate_content("🎰" * 251)

    def test_custom_limit(self):
        with pytest.raises(ValidationError):
            validate_content("abcdef", max_length=5)
