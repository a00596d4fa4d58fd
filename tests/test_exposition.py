import pytest

from sandboxguard.exposition import (
    Counter,
    CounterVec,
    Gauge,
    Histogram,
    HistogramVec,
    Registry,
)


def test_counter_export_format():
    registry = Registry()
    counter = Counter("requests_total", "Total requests")
    registry.register(counter)
    counter.inc()
    counter.inc(2)
    assert counter.get() == 3
    assert registry.export() == (
        "# HELP requests_total Total requests\n"
        "# TYPE requests_total counter\n"
        "requests_total 3\n"
    )


def test_counter_rejects_negative_increment():
    counter = Counter("c", "help")
    with pytest.raises(ValueError):
        counter.inc(-1)
    assert counter.get() == 0


def test_gauge_set_and_get():
    gauge = Gauge("g", "help")
    gauge.set(4.5)
    assert gauge.get() == 4.5
    registry = Registry()
    registry.register(gauge)
    assert "# TYPE g gauge\ng 4.5\n" in registry.export()


def test_histogram_buckets_are_cumulative():
    histogram = Histogram("h", "help", buckets=[1, 10])
    for value in (0.5, 2, 20):
        histogram.observe(value)
    registry = Registry()
    registry.register(histogram)
    lines = registry.export().splitlines()
    assert 'h_bucket{le="1"} 1' in lines
    assert 'h_bucket{le="10"} 2' in lines
    assert 'h_bucket{le="+Inf"} 3' in lines
    assert "h_count 3" in lines
    assert "h_sum 22.5" in lines
    assert histogram.sample_count == 3
    assert histogram.sample_sum == 22.5


def test_histogram_value_on_bound_counts_in_that_bucket():
    histogram = Histogram("h", "help", buckets=[1, 10])
    histogram.observe(1)
    registry = Registry()
    registry.register(histogram)
    assert 'h_bucket{le="1"} 1' in registry.export().splitlines()


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram("h", "help", buckets=[5, 1])


def test_counter_vec_reuses_children_and_checks_cardinality():
    vec = CounterVec("runs_total", "Runs", ["provider", "success"])
    first = vec.with_label_values("p1", "true")
    assert vec.with_label_values("p1", "true") is first
    with pytest.raises(ValueError):
        vec.with_label_values("p1")


def test_counter_vec_export_sorted_by_labels():
    registry = Registry()
    vec = CounterVec("runs_total", "Runs", ["provider"])
    registry.register(vec)
    vec.with_label_values("zeta").inc()
    vec.with_label_values("alpha").inc(2)
    lines = registry.export().splitlines()
    samples = [line for line in lines if not line.startswith("#")]
    assert samples == ['runs_total{provider="alpha"} 2', 'runs_total{provider="zeta"} 1']


def test_histogram_vec_labels_precede_le():
    registry = Registry()
    vec = HistogramVec("d", "Duration", ["provider"], buckets=[1])
    registry.register(vec)
    vec.with_label_values("p").observe(0.5)
    lines = registry.export().splitlines()
    assert 'd_bucket{provider="p",le="1"} 1' in lines
    assert 'd_count{provider="p"} 1' in lines


def test_empty_vec_is_omitted():
    registry = Registry()
    registry.register(CounterVec("unused_total", "Unused", ["a"]))
    assert registry.export() == ""


def test_registry_rejects_duplicates_and_invalid_names():
    registry = Registry()
    registry.register(Counter("dup", "help"))
    with pytest.raises(ValueError):
        registry.register(Gauge("dup", "other"))
    with pytest.raises(ValueError):
        Counter("bad-name", "help")
    with pytest.raises(ValueError):
        CounterVec("ok", "help", ["__reserved"])


def test_export_orders_families_by_name():
    registry = Registry()
    registry.register(Counter("b_total", "b"))
    registry.register(Counter("a_total", "a"))
    text = registry.export()
    assert text.index("a_total") < text.index("b_total")


def test_label_values_are_escaped():
    registry = Registry()
    vec = CounterVec("c", "help", ["k"])
    registry.register(vec)
    vec.with_label_values('a"b').inc()
    assert 'c{k="a\\"b"} 1' in registry.export().splitlines()