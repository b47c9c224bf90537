"""Quests: long-lived assistant conversations bound to a working directory."""
