"""Collaborator contracts and the local implementations shipped with the engine."""
