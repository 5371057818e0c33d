"""Package configuration."""

from setuptools import find_namespace_packages, setup

install_requires = [
    'prettytable',
    'PyYAML',
    'requests',
    'wikimedia-spicerack',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'bandit>=1.5.0',
        'flake8>=3.2.1',
        'mypy>=0.670',
        'pytest>=6.1.0',
        'types-PyYAML',
        'types-requests',
        'types-setuptools',
    ],
    'prospector': [
        'prospector[with_everything]>=0.12.4,<1.12.0',
        'pytest>=6.1.0',
    ],
}

setup(
    description='Orchestration cookbooks to start, validate, diagnose and stop a Docker Compose Hadoop/Hive cluster',
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['hadoop', 'hive', 'docker-compose', 'automation', 'orchestration', 'cookbooks'],
    license='GPLv3+',
    name='hadoop-hive-cookbooks',
    packages=find_namespace_packages(include=['cookbooks', 'cookbooks.*'], exclude=['*.tests', '*.tests.*']),
    package_data={'cookbooks.hivecluster': ['cluster.yaml']},
    platforms=['GNU/Linux'],
    version='0.1.0',
    zip_safe=False,
)
