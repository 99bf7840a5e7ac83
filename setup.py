from setuptools import find_packages, setup

setup(
    name="sysnap",
    # Sysnap gets added seperately to include version.py
    packages=list(map(lambda v: "sysnap." + v, find_packages("sysnap"))) + ["sysnap"],
    install_requires=[
        "dissect.target",
    ],
    extras_require={
        "full": [
            "rich",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "sysnap=sysnap.sysnap:main",
        ],
    },
    include_package_data=True,
)
