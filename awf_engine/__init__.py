"""AI-narrated RPG turn pipeline.

Assembles a layered, token-budgeted prompt from stored content, asks a model
for a structured reply, validates it (one repair retry at most), and folds the
reply's acts into the next game state.
"""
