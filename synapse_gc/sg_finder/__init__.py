"""
Unreferenced state group finder.

Finds state groups in a Synapse database that no event needs any more,
either directly or as an ancestor in another group's delta chain, and lists
them for a manual bulk-delete step. The finder never writes to the database.

Architecture:
    ┌─────────────┐     ┌──────────┐     ┌──────────────┐     ┌───────────┐     ┌────────┐
    │   Loader    │────▶│ Id Index │────▶│ Reachability │────▶│ Extractor │────▶│  Sink  │
    │ (snapshot)  │     │ (dense)  │     │   (BFS)      │     │ (!kept)   │     │ (file) │
    └──────┬──────┘     └──────────┘     └──────────────┘     └───────────┘     └────────┘
           │
           ▼
    ┌─────────────────────────────────────────────┐
    │  PostgreSQL: state_groups,                   │
    │  state_group_edges, event_to_state_groups    │
    └─────────────────────────────────────────────┘

Invariants:
    - All reads happen inside one consistent snapshot
    - Every group reachable from an event reference is kept
    - Data anomalies are reported, never corrected
    - The result is written completely or not at all

How to change safely:
    - The table and column names are owned by Synapse; change them only
      when Synapse changes its schema
    - Verify closure properties with the randomized tests before touching
      the reachability engine
"""

from ._version import __version__

__all__ = ["__version__"]
