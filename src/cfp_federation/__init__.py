"""CFP federation service: license, consent sync and signed webhooks."""
