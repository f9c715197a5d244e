import sys
import os
import uvicorn

# Add current directory to sys.path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

if __name__ == "__main__":
    host = os.getenv("SUPPORT_RELAY_HOST", "0.0.0.0")
    port = int(os.getenv("SUPPORT_RELAY_PORT", "8000"))
    print(f"Starting support relay on {host}:{port}...")
    # Presence and room state live in this process: run a single worker
    uvicorn.run("app.main:app", host=host, port=port, workers=1, reload=False)
