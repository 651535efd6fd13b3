"""
AI signal health module

Tracks per-symbol LLM call outcomes, validates model output and gates the
screening pipeline. No failure here ever produces a trade: invalid output
degrades to a HOLD fallback and expected errors degrade to no signal.
"""
