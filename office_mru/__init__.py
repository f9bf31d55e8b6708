"""Office MRU harvester: recently used Office documents per user, with optional VBA macro inspection."""
