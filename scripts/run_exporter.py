"""Run the exporter with settings from the environment only (container entrypoint)."""

from loguru import logger

from uprof_exporter.cli import build_exporter, serve, setup_logging
from uprof_exporter.core.config import load_settings

if __name__ == "__main__":
    settings = load_settings()
    setup_logging(settings.log_level)
    registry, sampler = build_exporter(settings)
    sampler.prepare_output_dir()
    serve(registry, settings.bind, settings.port)
    logger.info("Prometheus metrics serving on :{}", settings.port)
    try:
        sampler.run_forever()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, exiting...")
