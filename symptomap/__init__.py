"""
SymptoMap — Disease Outbreak Mapping Package (v1.0.0)

Architecture:
  symptomap/
  ├── config/      — Environment, feature flags, role/permission matrix, constants
  ├── logger/      — loguru sink setup
  ├── db/          — JSON file store, optional PostgreSQL backend
  ├── auth/        — JWT, bcrypt, user store, permission dependencies
  ├── audit/       — Audit log writer and query
  ├── schemas/     — Pydantic request/response models
  ├── outbreaks/   — Outbreak cluster CRUD, filters, stats
  ├── predictions/ — Trend forecaster, model catalogue, retraining
  ├── symptoms/    — Symptom reports, analysis cache, cluster detection, alerts
  ├── realtime/    — Socket.IO server: subscriptions, broadcasts, metrics
  ├── client/      — HTTP API client with 401 policy
  ├── live/        — Socket.IO client with reconnect backoff
  ├── mapstate/    — Map store: filters, time-lapse, annotations
  └── server.py    — FastAPI routing layer + ASGI app

Server-side modules never import the client-side ones (client, live, mapstate).
"""
