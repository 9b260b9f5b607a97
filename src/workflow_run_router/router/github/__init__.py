"""GitHub API access for router actions."""
