#!/usr/bin/env python3
"""
Backend startup wrapper - properly handles process lifecycle
"""
import os
import sys

# Add workspace to path
workspace_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, workspace_root)

if __name__ == "__main__":
    print("[Backend] Starting MyWallet billing backend")
    print("[Backend] Server: http://localhost:8000")
    print("[Backend] Press CTRL+C to stop")
    try:
        import uvicorn
        uvicorn.run(
            "mywallet.main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            reload=False,
            log_level="info",
            access_log=True
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)
