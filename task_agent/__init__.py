# flake8: noqa
"""
Backend package for the conversational task manager.

Modules:
    settings:    Configuration loading and persistence helpers.
    storage:     SQLite store for one session's tasks and chat messages.
    llm:         Workers AI client and reply normalisation.
    assistant:   Prompt building, inline action extraction and execution.
    connections: Registry and broadcaster for live WebSocket clients.
    session:     Session coordinator and the per-key session registry.
    templates:   HTML rendering for the single-page interface.
    main:        FastAPI application wiring everything together.
"""
