"""Luxe Dental — the conversational core of a clinic's WhatsApp receptionist.

Architecture Overview
=====================

One inbound message goes through a **LangGraph** state machine with four
nodes:

1. **safety_gate** — a keyword check (emergencies, intense pain, bleeding,
   accidents, requests for a human) that short-circuits to a fixed handoff
   reply without calling the LLM.

2. **prompt** — renders the Spanish system prompt from the clinic config,
   service catalogue, the contact's upcoming appointments and accumulated
   notes, plus the last 10 messages.

3. **chatbot** — one DeepSeek chat-completion call with the six tool
   definitions.  The model replies in text or asks for tools.

4. **tools** — validates and executes each requested call in order and feeds
   the results back to the chatbot node.

Routing: safety_gate → (handoff?) → END | prompt → chatbot ⇄ tools → END,
with at most 5 chatbot calls per message.

Key Design Decisions
--------------------
- **LLM**: DeepSeek's OpenAI-compatible API over httpx, with exponential
  backoff retries (3 attempts) for transport errors and 5xx responses.
- **Tools**: pydantic argument models double as the JSON schemas sent to the
  model and as the validators for its arguments.  Bad input becomes a failed
  ``ToolResult`` the model can read, never an exception.
- **Memory**: no checkpointer.  Each message gets a fresh context from the
  store; long histories are summarised into the contact's notes by the
  ``ContextCompactor`` after the reply is sent.
- **Persistence**: a ``ClinicStore`` interface with an in-memory
  implementation (tests, CLI) and a Supabase/PostgREST one (production).
- **Dual Interface**: FastAPI server (WhatsApp webhook + chat API) and a CLI
  chat loop for development.

Package Structure
-----------------
- ``dental_agent/agent.py`` — LangGraph StateGraph and ``ClinicAgent``
- ``dental_agent/safety.py`` — handoff keyword gate
- ``dental_agent/prompts.py`` — system prompt and summariser prompt
- ``dental_agent/compactor.py`` — rolling conversation summaries
- ``dental_agent/models.py`` — pydantic domain types
- ``dental_agent/config.py`` — configuration from the environment / SSM
- ``dental_agent/server.py`` — FastAPI application
- ``dental_agent/main.py`` — CLI chat interface
- ``dental_agent/services/`` — DeepSeek, WhatsApp and Supabase clients,
  stores, scheduling rules, ingestion service, cache, metrics
- ``dental_agent/tools/`` — tool argument models, handlers and executor
- ``dental_agent/api/`` — FastAPI routes and pydantic schemas
"""
