from logging import getLogger, Formatter, StreamHandler
from logging.handlers import RotatingFileHandler
from my_config_loader import MyConfigLoader
from os import path, makedirs
from singleton_type import SingletonType


####################################################################
#       CONFIGURATION                                              #
####################################################################
LOGGER_NAME = "pdfsig"
LOG_FORMAT = '%(asctime)s - [%(levelname)s | %(filename)s:%(lineno)s] > %(message)s'
####################################################################


class MyLogger(object, metaclass=SingletonType):
    _logger = None

    def __init__(self):
        config = MyConfigLoader().get_logger_config()

        self._logger = getLogger(LOGGER_NAME)
        self._logger.setLevel(config["level"])

        log_folder = config["log_folder"]
        if log_folder:
            if not path.isdir(log_folder):
                makedirs(log_folder)
            handler = RotatingFileHandler(
                path.join(log_folder, config["log_file_name"]),
                maxBytes=config["file_byte_size"],
                backupCount=config["log_files_count"])
        else:
            handler = StreamHandler()
        handler.setFormatter(Formatter(LOG_FORMAT))
        self._logger.addHandler(handler)

        self._logger.info("  ---  Started logger  ---")

    def my_logger(self):
        return self._logger
