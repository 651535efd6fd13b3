"""
Tests for LLM response parsing, schema validation and the HOLD fallback.
"""
import json

import pytest

from ai.response_validator import ResponseValidator, fallback_signal
from core.exceptions import AIHallucinationError, AIParsingError, ErrorKind
from tests.helpers import signal_json


@pytest.fixture
def validator():
    return ResponseValidator()


class TestParsing:
    def test_direct_json(self, validator):
        assert validator.parse('{"signal_type": "BUY"}') == {"signal_type": "BUY"}

    def test_fenced_code_block(self, validator):
        text = 'Here is my answer:\n```json\n{"signal_type": "SELL", "asset_pair": "BTC/USDT"}\n```\nGood luck'
        assert validator.parse(text)["signal_type"] == "SELL"

    def test_embedded_object_with_trailing_comma(self, validator):
        text = 'Analysis follows {"signal_type": "HOLD", "confidence_score": 0.4,} end'
        data = validator.parse(text)
        assert data == {"signal_type": "HOLD", "confidence_score": 0.4}

    def test_loose_field_extraction(self, validator):
        text = "Signal type: SELL\nConfidence: 0.72\nSymbol: BTC/USDT"
        data = validator.parse(text)
        assert data["signal_type"] == "SELL"
        assert data["confidence_score"] == pytest.approx(0.72)
        assert data["asset_pair"] == "BTC/USDT"

    def test_single_field_is_not_enough(self, validator):
        with pytest.raises(AIParsingError):
            validator.parse("Confidence: 0.5 and nothing else useful")

    @pytest.mark.parametrize("response", [None, "", "no json here at all"])
    def test_unparseable(self, validator, response):
        with pytest.raises(AIParsingError):
            validator.parse(response)


class TestValidation:
    def test_valid_signal(self, validator):
        result = validator.validate_detailed_signal(signal_json("BTC/USDT", "SELL", 0.8), "BTC/USDT")

        assert result.is_valid
        assert not result.used_fallback
        assert result.error is None
        assert result.signal.signal_type == "SELL"
        assert result.signal.confidence_score == pytest.approx(0.8)

    def test_signal_type_normalized(self, validator):
        payload = json.loads(signal_json())
        payload["signal_type"] = " buy "
        result = validator.validate_detailed_signal(json.dumps(payload), "BTC/USDT")

        assert result.is_valid
        assert result.signal.signal_type == "BUY"

    def test_confidence_and_size_clamped(self, validator):
        payload = json.loads(signal_json(confidence=1.7))
        payload["suggested_position_size_percent"] = -0.2
        result = validator.validate_detailed_signal(json.dumps(payload), "BTC/USDT")

        assert result.signal.confidence_score == 1.0
        assert result.signal.suggested_position_size_percent == 0.0

    def test_long_reasoning_truncated(self, validator):
        payload = json.loads(signal_json())
        payload["reasoning"] = "x" * 2000
        result = validator.validate_detailed_signal(json.dumps(payload), "BTC/USDT")

        assert len(result.signal.reasoning) == 500

    def test_hallucinated_symbol_falls_back(self, validator):
        result = validator.validate_detailed_signal(signal_json("DOGE/USDT"), "BTC/USDT")

        assert not result.is_valid
        assert result.used_fallback
        assert isinstance(result.error, AIHallucinationError)
        assert result.error.kind == ErrorKind.HALLUCINATION
        assert result.signal.asset_pair == "BTC/USDT"
        assert result.signal.signal_type == "HOLD"

    def test_unknown_signal_type_falls_back(self, validator):
        payload = json.loads(signal_json())
        payload["signal_type"] = "MOON"
        result = validator.validate_detailed_signal(json.dumps(payload), "BTC/USDT")

        assert not result.is_valid
        assert isinstance(result.error, AIParsingError)
        assert result.error.parse_stage == "validation"
        assert result.error.kind == ErrorKind.MALFORMED_JSON

    def test_negative_price_falls_back(self, validator):
        payload = json.loads(signal_json())
        payload["stop_loss_price"] = -1
        result = validator.validate_detailed_signal(json.dumps(payload), "BTC/USDT")
        assert result.used_fallback

    def test_garbage_falls_back(self, validator):
        result = validator.validate_detailed_signal("I cannot help with that.", "ETH/USDT")

        assert result.used_fallback
        assert result.error.asset_pair == "ETH/USDT"


class TestFallback:
    def test_fallback_is_conservative_hold(self):
        signal = fallback_signal("BTC/USDT")

        assert signal.signal_type == "HOLD"
        assert signal.confidence_score == pytest.approx(0.3)
        assert signal.used_fallback
        assert signal.suggested_position_size_percent == 0.0
