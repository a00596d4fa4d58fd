"""Telemetry collector: sandbox runs, training data, predictions, metrics and its HTTP service."""