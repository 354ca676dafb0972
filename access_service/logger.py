import datetime
import logging
import socket

from pythonjsonlogger.json import JsonFormatter

from access_service.config import get_settings

SERVICE_NAME = "access_service"


class ServiceJsonFormatter(JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = datetime.datetime.now(datetime.timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['service'] = SERVICE_NAME


class LogstashTcpHandler(logging.Handler):
    """Ships one JSON line per record; an unreachable Logstash never breaks a request."""

    def __init__(self, host: str, port: int, timeout: float = 1):
        super().__init__()
        self.address = (host, port)
        self.timeout = timeout

    def emit(self, record):
        try:
            line = self.format(record) + '\n'
            with socket.create_connection(self.address, timeout=self.timeout) as sock:
                sock.sendall(line.encode('utf-8'))
        except OSError:
            self.handleError(record)


def get_logger(name: str = SERVICE_NAME) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    settings = get_settings()
    formatter = ServiceJsonFormatter('%(timestamp)s %(level)s %(logger)s %(message)s')
    # Logstash
    if settings.logstash_host:
        tcp_handler = LogstashTcpHandler(settings.logstash_host, settings.logstash_port)
        tcp_handler.setFormatter(formatter)
        logger.addHandler(tcp_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


logger = get_logger()
