#!/usr/bin/env python3
"""在容器内启动网关：配置来自 GATEWAY_CONFIG_PATH（YAML/JSON）与 GATEWAY_* / SERVICE_<NAME>_URL 环境变量。"""
import os
import sys
import logging

sys.path.insert(0, os.environ.get("APP_ROOT", os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from edge_platform.core.gateway.app import create_app
from edge_platform.core.gateway.config import load_settings
from edge_platform.core.gateway.correlation import CorrelationIdFilter

logging.basicConfig(
    level=getattr(logging, os.environ.get("GATEWAY_LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s",
)
for handler in logging.getLogger().handlers:
    handler.addFilter(CorrelationIdFilter())

settings = load_settings()
app = create_app(settings)

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("GATEWAY_PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port, log_config=None)
