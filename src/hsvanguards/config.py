""" This file contains configuration defaults, options parsing, and config
    file code.
"""
import argparse
import os
import sys

from configparser import ConfigParser, Error

from . import alerts
from . import bandguards
from . import logguard
from . import rendguard
from . import vanguards

from . import logger
from .errors import ConfigValidationError
from .logger import plog

################# Global options ##################

ENABLE_VANGUARDS=True

ENABLE_RENDGUARD=True

ENABLE_BANDGUARDS=True

ENABLE_LOGGUARD=True

# State file location
STATE_FILE = "vanguards.state"

# Config file location
_CONFIG_FILE = "vanguards.conf"

# Loglevel
LOGLEVEL = "NOTICE"

# Log to file instead of stdout
LOGFILE = ""

# If true, write/update vanguards to torrc and then exit
ONE_SHOT_VANGUARDS = False

CONTROL_IP = "127.0.0.1"
CONTROL_PORT = 9051
CONTROL_SOCKET = ""
CONTROL_PASS = ""

_RETRY_LIMIT = None

def apply_env():
  global STATE_FILE, _CONFIG_FILE
  STATE_FILE = os.environ.get("VANGUARDS_STATE", STATE_FILE)
  _CONFIG_FILE = os.environ.get("VANGUARDS_CONFIG", _CONFIG_FILE)

def setup_options(argv=None):
  global CONTROL_IP, CONTROL_PORT, CONTROL_SOCKET, CONTROL_PASS, STATE_FILE
  global ENABLE_BANDGUARDS, ENABLE_RENDGUARD, ENABLE_LOGGUARD
  global LOGLEVEL, LOGFILE, _RETRY_LIMIT
  global ONE_SHOT_VANGUARDS, ENABLE_VANGUARDS

  parser = argparse.ArgumentParser()

  parser.add_argument("--state", dest="state_file", default=STATE_FILE,
                      help="File to store vanguard state")

  parser.add_argument("--generate_config", dest="write_file", type=str,
                      help="Write config to a file after applying command args")

  parser.add_argument("--loglevel", dest="loglevel", type=str,
                      help="Log verbosity (DEBUG, INFO, NOTICE, WARN, or ERROR)")

  parser.add_argument("--logfile", dest="logfile", type=str,
                      help="Log to LOGFILE instead of stdout")

  parser.add_argument("--config", dest="config_file", default=_CONFIG_FILE,
                      help="Location of config file with more advanced settings")

  parser.add_argument("--control_ip", dest="control_ip", default=CONTROL_IP,
                    help="The IP address of the Tor Control Port to connect to (default: "+
                    CONTROL_IP+")")
  parser.add_argument("--control_port", type=int, dest="control_port",
                      default=CONTROL_PORT,
                      help="The Tor Control Port to connect to (default: "+
                      str(CONTROL_PORT)+")")

  parser.add_argument("--control_socket", dest="control_socket",
                      default=CONTROL_SOCKET,
                      help="The Tor Control Socket path to connect to "+
                      "(default: "+str(CONTROL_SOCKET)+")")
  parser.add_argument("--control_pass", dest="control_pass",
                      default=CONTROL_PASS,
                      help="The Tor Control Port password (optional) ")

  parser.add_argument("--retry_limit", dest="retry_limit",
                      default=_RETRY_LIMIT, type=int,
                      help="Reconnect attempt limit on failure (default: Infinite)")

  parser.add_argument("--one_shot_vanguards", dest="one_shot_vanguards",
                      action="store_true",
                      help="Set and write layer2 and layer3 guards to Torrc and exit.")
  parser.set_defaults(one_shot_vanguards=ONE_SHOT_VANGUARDS)

  parser.add_argument("--disable_vanguards", dest="vanguards_enabled",
                      action="store_false",
                      help="Disable setting any layer2 and layer3 guards.")
  parser.set_defaults(vanguards_enabled=ENABLE_VANGUARDS)

  parser.add_argument("--disable_bandguards", dest="bandguards_enabled",
                      action="store_false",
                      help="Disable circuit side channel checks (may help performance)")
  parser.set_defaults(bandguards_enabled=ENABLE_BANDGUARDS)

  parser.add_argument("--disable_rendguard", dest="rendguard_enabled",
                      action="store_false",
                      help="Disable rendezvous misuse checks (may help performance)")
  parser.set_defaults(rendguard_enabled=ENABLE_RENDGUARD)

  parser.add_argument("--disable_logguard", dest="logguard_enabled",
                      action="store_false",
                      help="Disable Tor log monitoring (may help performance)")
  parser.set_defaults(logguard_enabled=ENABLE_LOGGUARD)

  options = parser.parse_args(argv)

  (STATE_FILE, CONTROL_IP, CONTROL_PORT, CONTROL_SOCKET, CONTROL_PASS,
   ENABLE_BANDGUARDS, ENABLE_RENDGUARD, ENABLE_LOGGUARD,
   ONE_SHOT_VANGUARDS, ENABLE_VANGUARDS, _RETRY_LIMIT) = \
      (options.state_file, options.control_ip, options.control_port,
       options.control_socket, options.control_pass,
       options.bandguards_enabled, options.rendguard_enabled,
       options.logguard_enabled, options.one_shot_vanguards,
       options.vanguards_enabled, options.retry_limit)

  if options.logfile != None:
    LOGFILE = options.logfile

  if LOGFILE != "":
    logger.set_logfile(LOGFILE)

  if options.loglevel != None:
    LOGLEVEL = options.loglevel
  logger.set_loglevel(LOGLEVEL)

  if options.write_file != None:
    config = generate_config()
    with open(options.write_file, "w") as f:
      config.write(f)
    plog("NOTICE", "Wrote config to "+options.write_file)
    sys.exit(0)

  return options

# Avoid a big messy dict of defaults. We already have them.
def get_option(config, section, option, default):
  try:
    if isinstance(default, bool):
      ret = config.getboolean(section, option)
    else:
      ret = type(default)(config.get(section, option))
  except Error:
    return default
  except ValueError as e:
    raise ConfigValidationError("Bad value for "+option+" in ["+section+
                                "]: "+str(e))
  return ret

def get_options_for_module(config, module, section):
  for param in dir(module):
    if param.isupper() and param[0] != '_':
      val = getattr(module, param)
      if isinstance(val, (bool, int, float, str)):
        setattr(module, param,
                get_option(config, section, param.lower(), val))

def set_options_from_module(config, module, section):
  if not config.has_section(section):
    config.add_section(section)
  for param in dir(module):
    if param.isupper() and param[0] != '_':
      val = getattr(module, param)
      if isinstance(val, (bool, int, float, str)):
        config.set(section, param, str(val))

def _sections():
  return [(sys.modules[__name__], "Global"),
          (alerts, "Global"),
          (vanguards, "Vanguards"),
          (bandguards, "Bandguards"),
          (rendguard, "Rendguard"),
          (logguard, "Logguard")]

def generate_config():
  config = ConfigParser(allow_no_value=True, interpolation=None)
  for (module, section) in _sections():
    set_options_from_module(config, module, section)

  return config

def apply_config(config_file):
  config = ConfigParser(allow_no_value=True, interpolation=None)

  with open(config_file, "r") as f:
    config.read_file(f)

  for (module, section) in _sections():
    get_options_for_module(config, module, section)

def _check(cond, msg):
  if not cond:
    raise ConfigValidationError(msg)

def validate():
  """ Reject out of range or contradictory settings before we connect. """
  _check(LOGLEVEL in logger.loglevels, "Invalid loglevel: "+str(LOGLEVEL))
  _check(CONTROL_SOCKET != "" or 0 < CONTROL_PORT < 65536,
         "control_port must be between 1 and 65535")
  _check(_RETRY_LIMIT is None or _RETRY_LIMIT >= 0,
         "retry_limit can't be negative")

  for layer in (2, 3):
    num = getattr(vanguards, "NUM_LAYER%d_GUARDS" % layer)
    max_num = getattr(vanguards, "MAX_LAYER%d_GUARDS" % layer)
    min_life = getattr(vanguards, "MIN_LAYER%d_LIFETIME_HOURS" % layer)
    max_life = getattr(vanguards, "MAX_LAYER%d_LIFETIME_HOURS" % layer)
    _check(0 <= num <= max_num,
           "num_layer%d_guards must be between 0 and max_layer%d_guards"
           % (layer, layer))
    _check(0 < min_life <= max_life,
           "min_layer%d_lifetime_hours must be positive and no larger than "
           "max_layer%d_lifetime_hours" % (layer, layer))
  if ENABLE_VANGUARDS:
    _check(vanguards.NUM_LAYER2_GUARDS >= 1,
           "num_layer2_guards must be at least 1 with vanguards enabled")
  _check(vanguards.NUM_LAYER1_GUARDS >= 0, "num_layer1_guards can't be negative")
  _check(vanguards.LAYER1_LIFETIME_DAYS >= 0,
         "layer1_lifetime_days can't be negative")
  _check(vanguards.ROTATION_CHECK_SECS > 0,
         "rotation_check_secs must be positive")

  _check(rendguard.USE_MAX_USE_TO_BW_RATIO > 0,
         "use_max_use_to_bw_ratio must be positive")
  _check(rendguard.USE_MAX_CONSENSUS_WEIGHT_CHURN >= 0,
         "use_max_consensus_weight_churn can't be negative")
  for opt in ("USE_GLOBAL_START_COUNT", "USE_RELAY_START_COUNT",
              "USE_SCALE_AT_COUNT"):
    _check(getattr(rendguard, opt) >= 0, opt.lower()+" can't be negative")

  for opt in ("CIRC_MAX_MEGABYTES", "CIRC_MAX_AGE_HOURS",
              "CIRC_MAX_HSDESC_KILOBYTES", "CIRC_MAX_SERV_INTRO_KILOBYTES",
              "CIRC_MAX_DROPPED_CELLS", "CIRC_MAX_DISCONNECTED_SECS",
              "CONN_MAX_DISCONNECTED_SECS"):
    _check(getattr(bandguards, opt) >= 0, opt.lower()+" can't be negative")

  _check(logguard.LOG_DUMP_LEVEL in ("DEBUG", "INFO", "NOTICE", "WARN",
                                     "ERROR"),
         "Invalid log_dump_level: "+str(logguard.LOG_DUMP_LEVEL))
  _check(logguard.LOG_DUMP_LIMIT >= 0, "log_dump_limit can't be negative")
  _check(alerts.ALERT_RATE_LIMIT >= 1 and alerts.ALERT_RATE_WINDOW_SECS > 0,
         "alert_rate_limit and alert_rate_window_secs must be positive")
