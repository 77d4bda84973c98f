"""
Dual Gravity - next-track selection for a two-player music game
===============================================================

Given the current track and each player's hidden target artist, the engine
builds a pool of candidates from related artists, scores them against both
targets, evolves each player's gravity and returns a balanced set of
closer/neutral/further options.

Modules:
    - config: Configuration and constants
    - errors: Exception taxonomy
    - logging_utils: Logging setup and stage timing
    - models: Shared data model
    - genre_graph: Genre clusters and genre similarity
    - cache / store / backfill: Memory, durable and background tiers
    - spotify_client: Spotify API wrapper
    - resolver: Tiered artist, top-track and target resolution
    - candidates: Candidate pool building
    - scoring: Similarity, attraction and final scores
    - gravity: Gravity state machine and round phases
    - diversity: Closer/neutral/further option selection
    - pipeline: Three-stage protocol and orchestrator
    - cli: Command-line interface
"""

__version__ = "1.0.0"
