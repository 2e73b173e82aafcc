import os

import uvicorn


def main():
    uvicorn.run(
        "stressnet.app:app",
        host=os.getenv("STRESSNET_HOST", "0.0.0.0"),
        port=int(os.getenv("STRESSNET_PORT", "8000")),
        lifespan="on",
    )


if __name__ == "__main__":
    main()
