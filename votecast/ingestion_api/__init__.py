"""Vote-state API: mutations, result reads and live subscriptions."""
