""" Tor-style log levels on top of the logging module. """
import logging
import sys

logger = None
loglevel = "NOTICE"
logfile = None

loglevels = { "DEBUG":  logging.DEBUG,
              "INFO":   logging.INFO,
              "NOTICE": logging.INFO + 5,
              "WARN":   logging.WARN,
              "ERROR":  logging.ERROR,
              "NONE":   logging.ERROR + 5 }

logging.addLevelName(loglevels["NOTICE"], "NOTICE")
logging.addLevelName(loglevels["NONE"], "NONE")

def set_loglevel(level):
  global loglevel
  if level not in loglevels:
    plog("ERROR", "Invalid loglevel: "+str(level))
    sys.exit(1)
  loglevel = level
  if logger:
    logger.setLevel(loglevels[loglevel])

def set_logfile(filename):
  global logfile
  try:
    logfile = open(filename, "a")
  except Exception as e:
    plog("ERROR", "Can't open log file "+str(filename)+": "+str(e))
    sys.exit(1)
  logger_init()

def logger_init():
  global logger, logfile

  # Default behavior = log to stdout if logfile is None,
  # or to the open file specified otherwise.
  logger = logging.getLogger("hsvanguards")
  formatter = logging.Formatter("%(levelname)s[%(asctime)s]: %(message)s",
                                "%a %b %d %H:%M:%S %Y")

  if not logfile:
    logfile = sys.stdout
  for h in list(logger.handlers):
    logger.removeHandler(h)
  ch = logging.StreamHandler(logfile)
  ch.setFormatter(formatter)
  logger.addHandler(ch)
  logger.setLevel(loglevels[loglevel])
  logger.propagate = False

def plog(level, msg, *args):
  if not logger:
    logger_init()

  logger.log(loglevels[level], msg.strip(), *args)
