import logging
import sys
import os


class CleanFormatter(logging.Formatter):
    """Clean, readable log format for console."""

    # Emoji indicators for quick visual scanning
    LEVEL_ICONS = {
        'DEBUG': '🔍',
        'INFO': '📋',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨'
    }

    # Shorten logger names: "Core.Orchestrator" -> "MM"
    NAME_MAP = {
        'Core.Orchestrator': 'MM',
        'Core.Lifecycle': 'FSM',
        'Core.Events': 'EVT',
        'Strategy.AvellanedaStoikov': 'AS',
        'Analysis.Volatility': 'SIGMA',
        'Analysis.Intensity': 'KAPPA',
        'Analysis.Estimator': 'EST',
        'Execution.PositionLedger': 'POS',
        'Execution.Paper': 'PAPER',
        'Execution.Registry': 'EXCH',
        'Config.Strategy': 'CFG',
        'Main': 'MAIN',
    }

    def format(self, record):
        # Smart abbreviation if not in map
        if record.name in self.NAME_MAP:
            short_name = self.NAME_MAP[record.name]
        else:
            parts = record.name.split('.')
            short_name = parts[-1][:6].upper()

        # Time only (HH:MM:SS)
        time_str = self.formatTime(record, '%H:%M:%S')

        icon = self.LEVEL_ICONS.get(record.levelname, '')

        message = f"{time_str} [{short_name:6}] {icon} {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(log_level: str = "INFO", log_dir: str = "logs"):
    """
    Setup centralized logging configuration.

    Args:
        log_level: Console log level (DEBUG, INFO, etc)
        log_dir: Directory for the detailed DEBUG log file
    """
    os.makedirs(log_dir, exist_ok=True)

    # Root logger config
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers will filter by level

    # Remove existing handlers to avoid duplicates
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # 1. Console Handler (Clean, INFO+)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    console_handler.setFormatter(CleanFormatter())
    root_logger.addHandler(console_handler)

    # 2. File Handler (Detailed, DEBUG)
    file_handler = logging.FileHandler(
        os.path.join(log_dir, "market_maker.log"),
        encoding='utf-8',
        mode='a'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(file_handler)

    # 3. Quiet down noisy libraries
    noisy_modules = [
        'asyncio',
        'ccxt',
        'ccxt.base.exchange',
        'urllib3',
        'aiohttp',
    ]

    for module in noisy_modules:
        logging.getLogger(module).setLevel(logging.WARNING)

    logging.getLogger("Main").info("✅ Logging system initialized")
