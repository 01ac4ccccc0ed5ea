"""
guildmmr — Guild Matchmaking Rating for Albion Online Battles
==============================================================
Ingests battle and kill data from the public battleboard API, reconstructs
which guilds fought which in every encounter, and maintains a per-season
MMR for each guild that resists farming of weak or repeated opponents.

Package layout::

    guildmmr/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Rating constants + calculation version
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default tunables for the settings table
    ├── ingest/
    │   ├── client.py      # Rate-limited battleboard API client
    │   ├── limiter.py     # Token bucket + 429 ratio tracker
    │   ├── errors.py      # API error taxonomy
    │   └── schemas.py     # pydantic response models
    ├── engine/
    │   ├── cache.py       # In-memory settings cache
    │   ├── stats.py       # GuildBattleStats / BattleAnalysis
    │   ├── participation.py  # Significance filter predicates
    │   ├── clustering.py  # Kill clustering, friend groups, duration
    │   ├── analysis.py    # Battle analysis engine
    │   ├── factors.py     # The ten weighted rating factors
    │   └── rating.py      # Delta calculation pipeline
    └── services/
        ├── season_service.py  # Seasons, prime time, mass tracking
        ├── guild_service.py   # Guild identity resolution
        ├── battle_service.py  # Raw battle + kill persistence
        └── rating_service.py  # Transactional MMR application
"""

__version__ = "0.1.0"
