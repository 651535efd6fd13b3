"""
Validation of raw LLM signal responses.

Parsing is staged (direct JSON, fenced code block, first brace-delimited
object, loose field extraction). Anything that still fails the schema or
names the wrong asset pair is replaced by a conservative HOLD fallback.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import AIHallucinationError, AIParsingError, TradingApiError
from core.models import Signal

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_BRACES = re.compile(r"\{[\s\S]*\}")
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F-\x9F]")
_TRAILING_COMMA_OBJ = re.compile(r",\s*}")
_TRAILING_COMMA_ARR = re.compile(r",\s*]")

_FIELD_PATTERNS = {
    "signal_type": re.compile(r"(?:signal[_\s]*type|action)[:\s]*([A-Z_]+)", re.IGNORECASE),
    "confidence_score": re.compile(r"confidence[:\s]*([0-9.]+)", re.IGNORECASE),
    "asset_pair": re.compile(r"(?:asset[_\s]*pair|symbol)[:\s]*([A-Z/-]+)", re.IGNORECASE),
    "reasoning": re.compile(r"reasoning[:\s]*[\"']?([^\"\n]+)[\"']?", re.IGNORECASE),
}


class DetailedSignalPayload(BaseModel):
    """Schema the model is instructed to answer with."""
    asset_pair: str
    signal_type: Literal["BUY", "SELL", "HOLD", "NO_TRADE"]
    entry_price_suggestion: Union[str, float] = "MARKET"
    take_profit_price: float = Field(default=0.0, ge=0)
    stop_loss_price: float = Field(default=0.0, ge=0)
    confidence_score: float = Field(default=0.0)
    reasoning: str = ""
    suggested_position_size_percent: float = Field(default=0.0)

    @field_validator("signal_type", mode="before")
    @classmethod
    def normalize_signal_type(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("confidence_score", "suggested_position_size_percent")
    @classmethod
    def clamp_unit_interval(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    def to_signal(self) -> Signal:
        return Signal(
            asset_pair=self.asset_pair,
            signal_type=self.signal_type,
            entry_price_suggestion=self.entry_price_suggestion,
            take_profit_price=self.take_profit_price,
            stop_loss_price=self.stop_loss_price,
            confidence_score=self.confidence_score,
            reasoning=self.reasoning[:500],
            suggested_position_size_percent=self.suggested_position_size_percent,
        )


@dataclass
class ValidationResult:
    is_valid: bool
    signal: Signal
    error: Optional[TradingApiError] = None

    @property
    def used_fallback(self) -> bool:
        return self.signal.used_fallback


def fallback_signal(asset_pair: str) -> Signal:
    return Signal(
        asset_pair=asset_pair,
        signal_type="HOLD",
        entry_price_suggestion="MARKET",
        confidence_score=0.3,
        reasoning="Auto-generated due to AI parsing failure - holding position for safety",
        used_fallback=True,
    )


class ResponseValidator:
    def validate_detailed_signal(self, response: Optional[str], expected_symbol: str) -> ValidationResult:
        try:
            data = self.parse(response)
            payload = DetailedSignalPayload.model_validate(data)
            if payload.asset_pair != expected_symbol:
                raise AIHallucinationError(payload.asset_pair, [expected_symbol])
        except AIHallucinationError as exc:
            logger.error(f"AI hallucination in detail signal: got {exc.detected_symbol}, expected {expected_symbol}")
            return ValidationResult(is_valid=False, signal=fallback_signal(expected_symbol), error=exc)
        except AIParsingError as exc:
            exc.asset_pair = expected_symbol
            logger.warning(f"Unparseable AI response for {expected_symbol}: {exc}")
            return ValidationResult(is_valid=False, signal=fallback_signal(expected_symbol), error=exc)
        except ValidationError as exc:
            error = AIParsingError(
                f"Signal schema validation failed: {exc.error_count()} error(s)",
                raw_response=response or "",
                parse_stage="validation",
                asset_pair=expected_symbol,
            )
            logger.warning(f"Invalid AI signal for {expected_symbol}: {error}")
            return ValidationResult(is_valid=False, signal=fallback_signal(expected_symbol), error=error)

        return ValidationResult(is_valid=True, signal=payload.to_signal())

    def parse(self, response: Optional[str]) -> Dict[str, Any]:
        """Extract a JSON object from model output, raising AIParsingError."""
        if not response or not isinstance(response, str):
            raise AIParsingError("Empty or invalid response", raw_response=str(response or ""))

        candidates = [response]
        match = _CODE_BLOCK.search(response)
        if match:
            candidates.append(match.group(1))
        match = _BRACES.search(response)
        if match:
            candidates.append(self._clean_json(match.group(0)))

        for candidate in candidates:
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data

        extracted = self._extract_fields(response)
        if extracted:
            return extracted

        raise AIParsingError(
            "Failed to parse AI response at all stages", raw_response=response, parse_stage="extraction"
        )

    @staticmethod
    def _clean_json(raw: str) -> str:
        cleaned = _CONTROL_CHARS.sub("", raw)
        cleaned = _TRAILING_COMMA_OBJ.sub("}", cleaned)
        cleaned = _TRAILING_COMMA_ARR.sub("]", cleaned)
        return cleaned.strip()

    @staticmethod
    def _extract_fields(text: str) -> Optional[Dict[str, Any]]:
        extracted: Dict[str, Any] = {}
        for key, pattern in _FIELD_PATTERNS.items():
            match = pattern.search(text)
            if not match:
                continue
            value: Any = match.group(1).strip()
            if key == "confidence_score":
                try:
                    value = float(value)
                except ValueError:
                    value = 0.0
            extracted[key] = value
        return extracted if len(extracted) >= 2 else None
