"""
Funnel Completion Service: Entry Point
"""
import uvicorn

from funnelcore import settings

if __name__ == "__main__":
    uvicorn.run("funnelcore.app:app", host="0.0.0.0", port=settings.PORT, log_level="info")
