"""Core components: bank, browser, cache, tags, processor, updater, registry."""
