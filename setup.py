from setuptools import setup, find_packages

setup(
    name="medreminders",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "psycopg2-binary",
        "pydantic>=2",
        "pydantic-settings",
        "celery",
        "kombu",
        "firebase-admin",
        "requests",
        "prometheus-client",
        "prometheus-fastapi-instrumentator",
        "tzdata",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
