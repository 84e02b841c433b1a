# fraudguard

`fraudguard` scores payment transactions for fraud risk and decides whether
each one is **approved**, sent to **review**, or **blocked**.

It is built around a small domain model and a set of pluggable rules, with
adapters for circuit breaking, caching, messaging and persistence around it,
and two Starlette applications: one that assesses transactions and one that
manages the transactions themselves.

## How a decision is made

Each rule looks at a transaction and returns a `RuleResult`: whether it
triggered, the score it adds, and a reason. The scores of all triggered rules
are summed and capped at 100 to give a `RiskScore`.

- Any single triggered rule with a score of 80 or more blocks the transaction.
- A risk score above 70 blocks it.
- A risk score from 40 to 70 sends it to review.
- Anything lower is approved.

A rule that raises (for example because a backing store is down) does not fail
the assessment: it is recorded as a triggered *fallback* result carrying the
rule's configured fallback score.

Every `FraudAssessment` records domain events in its `events` tuple: an
`AssessmentCompletedEvent` always, and a `FraudDetectedEvent` as well when the
decision is blocked.

## The domain model

```python
from datetime import datetime, timezone

from fraudguard.domain import (
    Decision,
    FraudAssessment,
    Money,
    RuleResult,
    compute_risk_score,
    derive_decision,
)

price = Money.of(250.0, "EUR")          # raises ValidationError for bad input

results = [
    RuleResult.create("amount", True, 40, "amount 1500.00 USD exceeds threshold 1000.00"),
    RuleResult.create("device", False, 0, ""),
]

score = compute_risk_score(results)      # RiskScore with value 40
assert score.is_review()
assert derive_decision(score, results) == Decision("review")

assessment = FraudAssessment.create(
    "tx-1", results, datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)
)
print(assessment.decision, assessment.risk_score.value)
for event in assessment.events:
    print(event.to_dict())
```

Supported currencies are USD, EUR, GBP, JPY, CAD, AUD, CHF, CNY, INR and BRL;
payment methods are `card`, `wire` and `crypto`. Invalid values raise
`fraudguard.domain.ValidationError`. `Coordinate.of` checks latitude and
longitude ranges and `Coordinate.distance_km` gives the great-circle distance.

## Rules

`fraudguard.rules` provides:

- `VelocityRule` – too many transactions from one sender inside a time window
  (backed by a `TransactionCounter`).
- `AmountRule` – amount above a threshold, with a critical score above three
  times the threshold.
- `DeviceRule` – missing device id, or a device not known for the sender
  (backed by a `DeviceRepository`).
- `LocationRule` – impossible travel from the sender's last known location.
- `PatternRule` – a hook for deeper pattern analysis; it never triggers.

A rule whose dependency fails raises `RuleError`.

`fraudguard.assessor.FraudRuleFactory` builds the velocity, amount and device
rules from configuration keys such as `rules.amount.threshold` and
`rules.velocity.max_count`, and `FraudAssessor` runs them and produces a
`FraudAssessment`, reporting to rule and assessment metrics.

`fraudguard.slow_path.SlowPathAssessor` runs the location and pattern rules
for an `AssessmentCompletedEvent`, adds their scores to the fast result, and
when the decision changes publishes an `AssessmentUpdatedEvent` (and a
`FraudDetectedEvent` if the new decision is blocked), stores the new decision
in the idempotency store and notifies a `WebhookNotifier`.

The interfaces the rules and assessors depend on are the protocols in
`fraudguard.ports`.

## Infrastructure adapters

- `fraudguard.resilience` – a `CircuitBreaker` (closed, open and half-open
  states), `new_breaker`, and `CircuitBreakerTransactionCounter` and
  `CircuitBreakerDeviceRepository`, which raise `CircuitOpenError` while the
  breaker refuses calls.
- `fraudguard.redis_store` – `TransactionCounter` (sorted sets of timestamps),
  `CachedDeviceRepository` (a read-through cache with `warm_up`) and
  `IdempotencyStore` (first write wins, with a TTL). Each takes a client with
  the redis-py method names; failures raise `StoreError`.
- `fraudguard.postgres` – `AssessmentRepository`, `ConfigRepository`,
  `DeviceRepository`, `OutboxRepository` and a `UnitOfWork`. Each takes
  `connect`, a callable returning a new DB-API connection whose driver uses the
  `%s` parameter style.
- `fraudguard.messaging` – `Publisher` sends events as JSON to
  `fraud.assessment.<event name>`; `Consumer` subscribes to completed
  assessments in the `fraud-workers` queue group, acks, naks, or moves a
  message to `fraud.assessment.dlq` when it cannot be decoded or has been
  delivered three times. The connection object needs `publish(subject, data)`
  and `queue_subscribe(subject, queue, callback)`.
- `fraudguard.outbox.OutboxPoller` – publishes pending outbox entries, marks
  failures and dead-letters entries retried three times. Use it as a context
  manager to poll in a background thread, or call `poll()` yourself.
- `fraudguard.worker.WorkerPool` – subscribes a consumer and runs the slow
  path for each event, reporting outcomes to worker metrics.
- `fraudguard.metrics.Metrics` – implements every metrics protocol and
  `render()`s the values in the Prometheus text format.

## HTTP API

`fraudguard.web.create_app(handler, logger, metrics, ready_check)` builds a
Starlette application around a `fraudguard.api.AssessHandler`:

| Method | Path                      | Purpose                                  |
|--------|---------------------------|------------------------------------------|
| POST   | `/v1/transactions/assess` | assess a transaction (202 Accepted)      |
| GET    | `/health`                 | liveness                                 |
| GET    | `/ready`                  | 200 or 503, as `ready_check()` reports   |
| GET    | `/metrics`                | `metrics.render()` as plain text         |

Requests carry or receive an `X-Request-ID` header (available inside a request
through `current_request_id()`); every request is logged, and unhandled
exceptions become a 500 JSON error. Sending an `X-Idempotency-Key` replays the
stored response for a repeated request, marked with `X-Idempotent-Replay:
true`. If the fast path does not finish within its time budget (20 ms by
default), the response has the decision `pending`. A completed assessment is
saved together with its outbox events in one database transaction.

## Transaction service

`fraudguard.txservice` models the payment side: a `Transaction` moves through
a fixed state machine (`created` → `pending_fraud_check` → `approved`,
`blocked` or `review`, and on to `pending_mfa`, `completed` or `failed`).
An invalid change raises `TransactionError`.

```python
from fraudguard.txservice.domain import (
    Coordinate,
    Money,
    Transaction,
    TransactionStatus,
)

tx = Transaction.create(
    "tx-1", "alice", "bob", Money(100.0, "USD"),
    "device-1", "203.0.113.7", Coordinate(52.52, 13.40), "card",
)
tx.transition_to(TransactionStatus("pending_fraud_check"))
tx.apply_fraud_decision("review", 45)
print(tx.status)
```

`fraudguard.txservice.service.TransactionService` saves a transaction, asks a
`FraudChecker` for a decision and applies it; `complete_mfa` approves a
transaction waiting in review or MFA. `PostgresTransactionRepository` in
`fraudguard.txservice.repository` stores transactions.
`fraudguard.txservice.web.create_app(handler)` exposes a `TransactionHandler`
at `POST /v1/transactions`, `GET /v1/transactions/{id}`,
`POST /v1/transactions/{id}/mfa` and `GET /health`.

## What the package does not do

- It has no command and no program that starts the services: you wire the
  adapters together and serve the Starlette applications with an ASGI server
  of your choice.
- It has no configuration cache or background configuration refresh;
  `fraudguard.postgres.ConfigRepository` reads the `config` table on every
  lookup.
- It bundles no database driver, Redis client or message broker client, and
  creates no database schema; you pass in connections and clients.
- It has no client for calling the assessment service from the transaction
  service; supply your own `FraudChecker`.