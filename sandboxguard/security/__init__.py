"""Security monitor: events, policies, aggregation, quarantine, metrics, storage and live streaming."""