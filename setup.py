from setuptools import find_packages, setup


setup(
    version="0.1.0",
    name="kegbuild",
    description="Source package build orchestrator",
    packages=find_packages(include=["kegbuild", "kegbuild.*"]),
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "kegbuild = kegbuild.app:main",
        ]
    },
    python_requires=">=3.11.4",
    install_requires=[
        "cleo~=2.1",
        "requests~=2.31",
        "poetry~=1.8.3",
        "poetry-core~=1.9",
        "packaging>=23.1",
        "tomli>=1.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "types-requests~=2.31.0.2",
        ]
    },
)
