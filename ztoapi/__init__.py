"""
OpenAI-compatible gateway in front of Z.ai / zread.ai chat upstreams.

Modules:
- settings / logging_config / errors: ambient configuration and error types
- provider: platform registry, upstream headers, token acquisition
- routing: client model name -> platform routing
- upstream / translator: upstream calls and SSE re-framing
- response_cache / stats: short-lived completion cache and request stats
- services / routes: chat orchestration and the FastAPI application
"""
