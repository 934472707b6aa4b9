from setuptools import setup, find_packages

setup(
    name='kubenode',
    version='0.1.0',
    packages=find_packages(exclude=['kubenode.tests', 'kubenode.tests.*']),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'rich',
        'pydantic>=2',
        'pydantic-settings>=2',
        'python-dotenv',
        'pyyaml',
        'requests',
        'tenacity>=8',
    ],
    extras_require={
        'test': [
            'pytest>=7',
        ],
    },
    entry_points={
        'console_scripts': [
            'kubenode=kubenode.cli:app'
        ]
    },
    author='Your Name',
    description='Checkpointed, resumable provisioning of a host into a Kubernetes node',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
        'Topic :: System :: Systems Administration',
    ],
    python_requires='>=3.8',
)
