import logging

import pytest
from pydantic import ValidationError

from brain_integration.config import (
    BrainSettings,
    GenerationConfig,
    LoggingConfig,
    ProtocolConfig,
    RetrievalConfig,
)
from brain_integration.errors import InferenceConfigError
from brain_integration.logging_config import setup_logging


def test_settings_defaults() -> None:
    settings = BrainSettings()

    assert settings.retrieval.max_retrieved_docs == 5
    assert settings.retrieval.similarity_threshold == 0.3
    assert settings.admission.max_concurrent_analyses == 3
    assert settings.admission.max_concurrent_scraping == 5
    assert settings.protocol.heartbeat_interval_seconds == 30
    assert settings.protocol.cleanup_interval_seconds == 60
    assert settings.protocol.max_clients == 100
    assert settings.inference.base_url == "http://localhost:11434"


def test_unknown_and_out_of_range_options_rejected() -> None:
    with pytest.raises(ValidationError):
        BrainSettings(retrieval={"max_docs": 3})

    with pytest.raises(ValidationError):
        RetrievalConfig(similarity_threshold=1.5)

    with pytest.raises(ValidationError):
        ProtocolConfig(heartbeat_interval_seconds=30, cleanup_interval_seconds=10)


def test_generation_options_raise_inference_config_error() -> None:
    assert GenerationConfig.build(temperature=0.7).temperature == 0.7

    with pytest.raises(InferenceConfigError):
        GenerationConfig.build(temperature=3.0)

    with pytest.raises(InferenceConfigError):
        GenerationConfig.build(beam_width=4)


def test_settings_read_nested_environment_variables(monkeypatch) -> None:
    monkeypatch.setenv("BRAIN_INFERENCE__HOST", "gpu-box")
    monkeypatch.setenv("BRAIN_ADMISSION__MAX_CONCURRENT_ANALYSES", "5")

    settings = BrainSettings()

    assert settings.inference.host == "gpu-box"
    assert settings.inference.base_url == "http://gpu-box:11434"
    assert settings.admission.max_concurrent_analyses == 5


def test_setup_logging_configures_package_logger_once(tmp_path) -> None:
    log_file = tmp_path / "logs" / "brain.log"
    config = LoggingConfig(level="DEBUG", console=False, file=str(log_file))

    logger = setup_logging(config)
    handlers = list(logger.handlers)
    again = setup_logging(LoggingConfig(level="WARNING"))

    assert again is logger
    assert logger.handlers == handlers
    assert logger.level == logging.WARNING
    assert log_file.parent.is_dir()

    for handler in handlers:
        logger.removeHandler(handler)
        handler.close()
    del logger._brain_configured
    logger.setLevel(logging.NOTSET)
