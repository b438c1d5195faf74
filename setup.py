"""
Dumpling Rewards - loyalty points, reward redemption and referrals backend
"""

from setuptools import setup, find_namespace_packages

setup(
    name="dumpling-rewards",
    version="1.0.0",
    description="Loyalty backend: reward redemption with exactly-once expiry refunds and referral guardrails",
    author="Bashirov",
    python_requires=">=3.11",
    packages=find_namespace_packages(include=["shared*", "loyalty_api*", "worker*"]),
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "redis>=5.0.1",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
            "fakeredis>=2.21.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "loyalty-api=loyalty_api.main:main",
            "loyalty-worker=worker.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.11",
    ],
)
