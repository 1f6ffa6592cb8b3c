from setuptools import setup, find_packages

setup(
    name="review-core",
    version="0.1.0",
    packages=find_packages(exclude=["review_core.tests", "review_core.tests.*"]),
    install_requires=[
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "python-dotenv>=0.19.0",
        "PyYAML>=6.0",
        "redis>=5.0.1",
        "PyJWT>=2.4.0",
        "celery>=5.3.0",
        "aiosqlite>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    python_requires=">=3.8",
)
