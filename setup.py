"""
CheckpointQuiz setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .[test]

    # Run the tests:
    python3 -m pytest tests
"""

from setuptools import setup

APP_NAME = "checkpoint-quiz"

setup(
    name=APP_NAME,
    version="1.1.0",
    description="Checkpoint comprehension quizzes generated from video transcripts",
    packages=[
        "checkpoint_quiz",
        "checkpoint_quiz.core",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "checkpoint-quiz=main:main",
        ],
    },
)
