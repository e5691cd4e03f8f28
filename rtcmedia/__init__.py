"""Real-time media helpers: jitter buffering, sample building, Ogg/Opus reading, A/V sync,
payload size limiting and cloud region lookup."""

__version__ = "0.1.0"