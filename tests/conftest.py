import pytest
from fleet_rollout.models import BatchConfig


@pytest.fixture
def fast_config():
    """Config with gates that pass on the first ready sample and millisecond backoff"""
    return BatchConfig(
        max_batch_size=2,
        stabilization_window_s=0,
        health_poll_interval_s=0.01,
        health_timeout_s=1.0,
        retry_max_attempts=3,
        retry_base_delay_s=0.01,
        retry_max_delay_s=0.05,
    )
