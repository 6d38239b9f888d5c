import signal
import sys
import threading

from configparser import Error as ConfigParserError

from . import config
from . import control

from .controller import Controller
from .errors import AuthError, ChannelError, ConfigValidationError
from .errors import StateFormatError
from .logger import plog
from .persistence import PersistenceStore
from .vanguards import VanguardState

_MIN_BACKOFF_SECS = 1
_MAX_BACKOFF_SECS = 60

def _fatal(msg):
  plog("ERROR", msg)
  sys.exit(1)

def load_config(argv=None):
  config.apply_env()
  try:
    config.apply_config(config._CONFIG_FILE)
  except (OSError, IOError):
    pass # Default config can be absent.
  except (ConfigParserError, ConfigValidationError) as e:
    _fatal("Config file "+config._CONFIG_FILE+" is invalid: "+str(e))
  options = config.setup_options(argv)

  # If the user specifies a config file, any values there should override
  # any previous config file options, but not options on the command line.
  if options.config_file != config._CONFIG_FILE:
    try:
      config.apply_config(options.config_file)
    except Exception as e:
      _fatal("Specified config file "+options.config_file+
             " can't be read: "+str(e))
    options = config.setup_options(argv)

  try:
    config.validate()
  except ConfigValidationError as e:
    _fatal(str(e))
  return options

def install_signal_handlers(stop_event):
  def handler(signum, frame):
    plog("NOTICE", "Got signal "+str(signum)+". Shutting down.")
    stop_event.set()

  signal.signal(signal.SIGINT, handler)
  signal.signal(signal.SIGTERM, handler)

def control_loop(state, stop_event):
  """ Connect, run until the connection dies, and reconnect with backoff.

      Returns when stop_event is set or a one-shot run completed.
  """
  retries = 0
  backoff = _MIN_BACKOFF_SECS

  while not stop_event.is_set():
    passwd = None
    if config.CONTROL_PASS:
      passwd = control.SecretPassword(config.CONTROL_PASS)

    try:
      channel = control.connect_and_authenticate(config.CONTROL_IP,
                                                 config.CONTROL_PORT,
                                                 config.CONTROL_SOCKET,
                                                 passwd)
    except AuthError as e:
      _fatal(str(e))
    except ChannelError as e:
      plog("NOTICE", str(e))
    else:
      retries = 0
      backoff = _MIN_BACKOFF_SECS
      controller = Controller(channel, state, stop_event)
      try:
        if config.ONE_SHOT_VANGUARDS:
          controller.run_once()
          plog("NOTICE", "Updated vanguards in torrc. Exiting.")
          return
        controller.setup()
        controller.run()
      except ChannelError as e:
        plog("NOTICE", "Tor connection lost: "+str(e))
      finally:
        channel.close()

    if stop_event.is_set():
      break

    retries += 1
    if config._RETRY_LIMIT is not None and retries > config._RETRY_LIMIT:
      _fatal("Giving up on tor after "+str(retries-1)+" retries.")

    plog("NOTICE", "Reconnecting to tor in "+str(backoff)+" seconds.")
    stop_event.wait(backoff)
    backoff = min(backoff*2, _MAX_BACKOFF_SECS)

def main(argv=None):
  load_config(argv)

  try:
    state = VanguardState.load_or_create(PersistenceStore(config.STATE_FILE))
  except StateFormatError as e:
    _fatal("Can't use state file "+config.STATE_FILE+": "+str(e))

  stop_event = threading.Event()
  install_signal_handlers(stop_event)

  control_loop(state, stop_event)
  sys.exit(0)
