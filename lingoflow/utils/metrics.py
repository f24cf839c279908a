# /lingoflow/utils/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Flow Metrics
flow_runs_counter = Counter('flow_runs_total', 'Flow runs by final status', ['flow_id', 'status'])
step_executions_counter = Counter('flow_step_executions_total', 'Step executions', ['node_kind', 'status'])
control_actions_counter = Counter('flow_control_actions_total', 'Flow control actions', ['action', 'outcome'])
active_sessions_gauge = Gauge('flow_active_sessions', 'Number of live flow sessions')
evicted_sessions_counter = Counter('flow_evicted_sessions_total', 'Sessions removed by the TTL sweep')

# AI Metrics
ai_requests_counter = Counter('ai_requests_total', 'Total AI requests', ['provider', 'status'])

# Performance Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
