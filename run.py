import logging
import threading
import time

from tests.simulators.daq_simulator import DaqSimulator
from transport.zmq_publisher import DaqOpenPublisher
from daq_sync.clock import LslMasterClock
from daq_sync.engine import DaqSyncEngine, EngineConfig
from daq_sync.host import MemoryHost

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(message)s")

# 1. Start simulated DAQ publisher
publisher = DaqOpenPublisher(DaqSimulator(), address="tcp://127.0.0.1:50001")
publisher.start()
threading.Thread(target=publisher.run, daemon=True).start()

# 2. Connect the engine (first frame arrives within the retry budget)
host = MemoryHost()
engine = DaqSyncEngine(
    host, host, LslMasterClock(), diagnostics=host,
    config=EngineConfig(address="tcp://127.0.0.1:50001"),
)
time.sleep(0.2)
if not engine.update():
    raise SystemExit(f"Update failed: {host.reports[-1][1]}")
engine.prepare_processing()

# 3. Process cycles at 10 Hz
try:
    while True:
        report = engine.process()
        if not report.idle:
            print(report)
        time.sleep(1/10)
except KeyboardInterrupt:
    publisher.stop()
    engine.close()
