"""LocalModel session manager.

Starts and talks to a locally running inference engine (Ollama by default),
keeping one persistent process warm per manager, falling back to one-shot
invocations when that channel misbehaves, and caching recent answers.
"""

__version__ = "0.1.0"
