# sandboxguard

sandboxguard provides two HTTP services for code-execution sandboxes. Both are built on FastAPI.

- **Security monitor** (`sandboxguard.security`). It accepts security events and checks each one against policies. Depending on the result it quarantines the sandbox or raises an alert. It groups events into patterns, anomalies and correlation chains. Events and alerts are streamed to dashboards over WebSocket. Falco output and a simulated probe monitor supply events.
- **Telemetry collector** (`sandboxguard.telemetry`). It records sandbox runs, training data and model predictions. It answers queries for per-provider statistics and for model performance, and it exposes Prometheus metrics.

## Installation

```
pip install .
pip install ".[test]"   # also installs pytest, pytest-asyncio and httpx
```

## Running the telemetry collector

```
sandboxguard-telemetry [--config-dir DIR]
```

Settings are merged from three sources. A later source overrides an earlier one.

1. Built-in defaults.
2. An optional file, `telemetry.toml` or `telemetry.json`, in the config directory. The directory defaults to `config`. If both files exist, the TOML file is used.
3. Environment variables that start with `TELEMETRY_`.

| Setting                      | Environment variable                   | Default  |
|------------------------------|----------------------------------------|----------|
| `port`                       | `TELEMETRY_PORT`                       | 8082     |
| `database_url`               | `TELEMETRY_DATABASE_URL`               | required |
| `max_training_data_age_days` | `TELEMETRY_MAX_TRAINING_DATA_AGE_DAYS` | 30       |
| `metrics_retention_days`     | `TELEMETRY_METRICS_RETENTION_DAYS`     | 90       |

`database_url` is a SQLAlchemy URL, for example `sqlite:///telemetry.db`. On startup the service creates any missing tables. It then listens on `0.0.0.0` at the configured port. If the configuration is missing or invalid, the command logs the error and exits with status 1.

Endpoints:

- `GET /health`: returns `{"status": "healthy", "database": "connected"}`, or 503 when the database does not answer.
- `POST /api/telemetry/sandbox-run`: stores a run. A run counts as a success when its exit code is 0.
- `GET /api/telemetry/training-data?start=...&limit=...`: returns records from `start` onward, newest first. `limit` defaults to 1000 and is capped at 10000.
- `POST /api/telemetry/training-data`: reads `provider`, `cost`, `duration` and `exitCode` from `sandbox_result`.
- `GET /api/telemetry/provider-stats/{provider}?start=...&end=...`
- `POST /api/telemetry/predictions`: records the prediction. When the actual outcome is included, it also records the cost and latency error percentages, each capped at 100.
- `GET /api/telemetry/model-performance/{version}?start=...&end=...`
- `GET /metrics`: Prometheus text format.

Errors are returned as `{"error": message}`. Storage failures are reported as `"Database error occurred"`.

To build the app yourself, call `sandboxguard.telemetry.app.create_app(config, database, metrics)` with a `Config`, a `Database` and a `Metrics` instance.

## Embedding the security monitor

No command starts the security monitor. Build the application and serve it yourself:

```python
import uvicorn
from sandboxguard.security.app import create_app
from sandboxguard.security.storage import EventStore

store = EventStore("sqlite:///security.db")
store.run_migrations()
app = create_app(store, ebpf_enabled=False, falco_enabled=True,
                 falco_rules_path="/etc/falco/rules.yaml")
uvicorn.run(app, port=8080)
```

Endpoints:

- Events: `POST /api/events`, `GET /api/events` and `GET /api/events/aggregate`.
- Policies: `POST /api/policies`, `GET /api/policies`, and `GET`, `PUT` and `DELETE` on `/api/policies/{id}`.
- Quarantines: `POST /api/quarantine`, `POST /api/quarantine/{id}/release` and `GET /api/quarantine`. The list shows active quarantines only.
- Per-sandbox monitoring: `POST /api/monitor/sandbox/{id}/start`, `POST .../stop` and `GET .../status`.
- Dashboard: `GET /api/dashboard/metrics`, `GET /api/dashboard/alerts` and the WebSocket at `/api/dashboard/ws`.
- `GET /health` returns `OK`.
- `GET /metrics` returns Prometheus text.

While the app runs, background jobs collect process metrics every minute. Every hour they delete stored events older than 30 days and drop monitors that started more than 24 hours earlier.

### Policies

`PolicyEngine.load_default_policies()` installs two policies:

- `policy_basic` denies file access that matches `/etc/passwd`, `/etc/shadow` or `/root/...`, and alerts on privilege escalation.
- `policy_shield` quarantines on critical-severity events and on suspicious behaviour.

When several rules match, `PolicyEngine.evaluate` returns the most restrictive action. From least to most restrictive, the actions are `allow`, `alert`, `deny` and `quarantine`.

### Aggregation

`EventAggregator.aggregate(events, window_ms)` returns three things:

- **Patterns**: counts per event type and severity, for events inside the window.
- **Anomalies**: critical events, and any event type that occurs more than 10 times in one sandbox.
- **Correlation groups**, of three kinds:
  - temporal groups, for events within one minute of each other;
  - per-sandbox groups, for sandboxes with several high or critical events;
  - known attack chains.

### Event sources

- `FalcoIntegration` runs the `falco` executable, which must be on `PATH`. It turns each JSON line Falco writes into a `SecurityEvent` and passes it to the handlers registered with `on_event`. `parse_falco_event` and `map_rule_to_event_type` can also be used on their own.
- `EbpfMonitor` attaches three programs: `file_monitor`, `network_monitor` and `process_monitor`. Each one emits a fixed sample event to its handlers every 30 seconds by default.

## What it does not do

- `EbpfMonitor` loads no kernel programs. Every event it emits is a simulated sample.
- Quarantine is bookkeeping only. `QuarantineManager` keeps its records in memory and neither stops nor isolates a sandbox. The app does not write quarantines to the `EventStore`.
- Alerts raised by `POST /api/events` go to WebSocket clients only and are not stored. `/api/dashboard/alerts` returns only alerts saved with `EventStore.store_alert`.
- The `threshold` and `time_window_ms` fields of a rule condition are accepted but not enforced.
- `EventStore.aggregate_old_events` does nothing and returns 0.
- The security monitor reads no configuration file or environment variables. Its options are the arguments to `create_app`.