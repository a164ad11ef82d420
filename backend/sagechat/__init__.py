"""Sage Chat: ask several sages one question and stream their answers."""
