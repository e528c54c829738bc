"""Central LLM model configuration.

Model ids are pinned here so that an upgrade is exactly one change.
"""

# Anthropic Claude model used for report triage
TRIAGE_MODEL = "claude-haiku-4-5-20251001"

# Output cap for one triage response. Overridable with TRIAGE_MAX_TOKENS.
TRIAGE_MAX_TOKENS = 1024

# Keychain service name consulted when ANTHROPIC_API_KEY is not set
ANTHROPIC_KEYCHAIN_SERVICE = "claude-api"
