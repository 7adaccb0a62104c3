"""Models - API enumerations, error envelopes and domain dataclasses."""
