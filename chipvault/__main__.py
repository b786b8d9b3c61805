# =======================================================================================
# chipvault/__main__.py - Development server (python -m chipvault)
# =======================================================================================
import uvicorn
from .config import config

if __name__ == "__main__":
    uvicorn.run("chipvault.main:app", host=config.API_HOST, port=config.API_PORT,
                reload=config.API_DEBUG)
