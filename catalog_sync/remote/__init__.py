"""Remote catalog client and rate-limited dispatcher."""
