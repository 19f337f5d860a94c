import uvicorn

from .config import settings


def main():
    uvicorn.run("vendor_billing.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
