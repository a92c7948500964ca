"""chatdigest: claim, filter, dedup, summarize and score raw chat messages."""
