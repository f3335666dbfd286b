"""Regulation Engine - behavioral regulation and signal engine backend."""
