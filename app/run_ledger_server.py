# app/run_ledger_server.py
import asyncio, signal, os
import contextlib

import uvicorn

from utils.config import load_cfg
from utils.logger import logger
from ledger.app.service import LedgerService
from ledger.app.control import build_app


async def main():
    cfg = load_cfg()
    service = await LedgerService.from_cfg(cfg)
    await service.start()

    ctl = service.settings.control
    token = ctl.token or os.environ.get("CONTROL_TOKEN")
    app = build_app(service, token=token)
    server = uvicorn.Server(
        uvicorn.Config(app, host=ctl.host,
                            port=ctl.port,
                            loop="asyncio",
                            lifespan="off",
                            timeout_keep_alive=10,
                            log_config=None,
                            access_log=False)
    )

    http_task = asyncio.create_task(server.serve(), name="http")
    stop_event = asyncio.Event()

    def _graceful(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _graceful)
        except NotImplementedError:
            pass  # Windows

    logger.info(f"agrisync ledger listening on {ctl.host}:{ctl.port}")
    await stop_event.wait()
    server.should_exit = True
    with contextlib.suppress(asyncio.CancelledError):
        await http_task
    await service.stop()

if __name__ == "__main__":
    asyncio.run(main())
