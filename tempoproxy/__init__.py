"""Tempo proxy gateway: OpenAI-compatible front end for the Tempo chat service."""
