"""switchboard - Anthropic Messages API gateway for OpenAI-compatible backends.

Accepts Anthropic Messages API requests, translates them to OpenAI Chat
Completions requests, forwards them to a configured upstream and translates
the responses (including streams) back.
"""

__version__ = "0.1.0"
