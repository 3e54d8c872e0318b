from setuptools import setup

setup(
    name='btrf-tree',
    version='1.0',
    py_modules=[
        'backtracking_search',
        'btrf_logging',
        'btrf_tree',
        'errors',
        'label_stats',
        'leaf_index',
        'persistence',
        'random_feature',
        'split_optimizer',
        'tree_builder',
    ],
    description='Backtracking regression tree for pixel-to-world-coordinate prediction',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    python_requires='>=3.10',
    install_requires=['numpy>=1.22'],
    extras_require={'test': ['pytest']},
)
