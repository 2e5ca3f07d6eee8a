# import
import logging
import os
import time

from bgplab.engine import BgpEngine
from bgplab.errors import InvariantViolation, LoadError
from bgplab.utils.config import ConfigManager
from bgplab.utils.lab import list_labs, load_lab_file
from bgplab.utils.logging import setup_logging

#-------------------------------------------
# Main
# LOG
setup_logging(os.path.dirname(os.path.abspath(__file__)))
G_LOG = logging.getLogger()

# Manager
G_CM = ConfigManager(G_LOG)             # ConfigManager
G_EN = BgpEngine(G_CM.ENGINE, G_LOG)    # BgpEngine


def on_lab_event(ev):
  # watcher thread, the engine lock keeps it off a running tick
  try:
    G_EN.load_lab(ev["doc"])
  except LoadError as e:
    G_LOG.error(f"[LAB] reload kept previous lab: {e}")

def on_engine_event(ev):
  t = ev["type"]
  if t in ("SESSION_UP", "SESSION_DOWN", "SESSION_FAULT"):
    G_LOG.info(f"event {t} {ev['neighbor']} at {ev['now_ms']}ms")

def first_lab():
  doc = G_CM.load_lab()
  if doc is not None:
    return doc
  labs = list_labs(G_CM.ENGINE.lab_dir)
  for lab in labs:
    G_LOG.info(f"[LAB] catalog {lab['id']}: {lab['name']}")
  if not labs:
    return None
  return load_lab_file(labs[0]["path"])


def main():

  G_LOG.info("Main start")

  doc = first_lab()
  if doc is None:
    G_LOG.error("[LAB] nothing to load")
    return

  G_EN.register_callback(on_engine_event)
  G_EN.load_lab(doc)

  G_CM.attach_lab_callback(on_lab_event)
  G_CM.start_watchers()

  ############## Loop start
  tick_s = G_CM.ENGINE.tick_ms / 1000
  try:
    while True:
      G_EN.tick()
      time.sleep(tick_s)
  except InvariantViolation as e:
    G_LOG.error(f"stopped: {e}")
  except KeyboardInterrupt:
    G_LOG.info("Main stop")
  finally:
    G_CM.stop_watchers()

# start
if __name__ == "__main__":
  main()
