import sys
import logging
import uvicorn

from codeforge.config import HOST, LOG_LEVEL, PORT

if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "codeforge.server:app",
        host=HOST,
        port=PORT,
        reload=True,
        reload_dirs=["codeforge"],
    )
