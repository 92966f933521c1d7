"""Named collections of cell type classifiers."""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import joblib

from .classifier import CellTypeClassifier
from .exceptions import (
    BrokenLineageError,
    IllegalOperationError,
    InvalidClassifierError,
    LoadError,
    UnknownCellTypeError,
)

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

DEFAULT_CLASSIFIERS_ENV = 'SCCLASSIFR_DEFAULT_CLASSIFIERS'
DEFAULT_CLASSIFIERS_PATH = Path(__file__).parent / 'data' / 'default_classifiers.joblib'

_FIELDS = ('cell_type', 'model', 'features', 'probability_threshold', 'parent')


def _record_to_dict(classifier: CellTypeClassifier) -> Dict[str, Any]:
    return {
        'cell_type': classifier.cell_type,
        'model': classifier.model,
        'features': list(classifier.features),
        'probability_threshold': classifier.probability_threshold,
        'parent': classifier.parent,
    }


def _record_from_dict(data: Dict[str, Any]) -> CellTypeClassifier:
    unknown = set(data) - set(_FIELDS)
    if unknown:
        raise LoadError(f"Unexpected classifier fields: {sorted(unknown)}")
    missing = [f for f in _FIELDS if f not in data]
    if missing:
        raise LoadError(f"Missing classifier fields: {missing}")
    return CellTypeClassifier(**data)


class ClassifierRegistry(Mapping):
    """
    Classifiers keyed by cell type, in registration order.
    
    Parents are stored by name and looked up when traversing, so the
    registry holds a forest of independent root cell types.
    
    Parameters
    ----------
    classifiers : iterable of CellTypeClassifier, optional
        Initial classifiers, registered in order.
        
    Examples
    --------
    >>> registry = ClassifierRegistry([clf_t, clf_cd4])
    >>> [c.cell_type for c in registry.resolve('CD4+ T cells')]
    ['T cells', 'CD4+ T cells']
    """
    
    def __init__(self, classifiers: Optional[Iterable[CellTypeClassifier]] = None) -> None:
        self._classifiers: Dict[str, CellTypeClassifier] = {}
        for classifier in classifiers or []:
            self.add(classifier)
    
    def __getitem__(self, cell_type: str) -> CellTypeClassifier:
        try:
            return self._classifiers[cell_type]
        except KeyError:
            raise UnknownCellTypeError(
                f"No classifier for cell type '{cell_type}'. "
                f"Available: {list(self._classifiers)}"
            ) from None
    
    def __iter__(self) -> Iterator[str]:
        return iter(self._classifiers)
    
    def __len__(self) -> int:
        return len(self._classifiers)
    
    def __repr__(self) -> str:
        return f"ClassifierRegistry({list(self._classifiers)})"
    
    def add(self, classifier: CellTypeClassifier, overwrite: bool = False) -> None:
        """
        Register a classifier.
        
        Raises
        ------
        TypeError
            If ``classifier`` is not a CellTypeClassifier.
        IllegalOperationError
            If the cell type is already registered and ``overwrite`` is False.
        """
        if not isinstance(classifier, CellTypeClassifier):
            raise TypeError(f"Expected CellTypeClassifier, got {type(classifier)}")
        
        if classifier.cell_type in self._classifiers and not overwrite:
            raise IllegalOperationError(
                f"A classifier for '{classifier.cell_type}' is already registered. "
                f"Use overwrite=True to replace it."
            )
        self._classifiers[classifier.cell_type] = classifier
    
    def remove(self, cell_type: str) -> CellTypeClassifier:
        """
        Unregister a classifier and return it.
        
        Raises
        ------
        IllegalOperationError
            If other classifiers still name it as their parent.
        """
        classifier = self[cell_type]
        children = self.children(cell_type)
        if children:
            raise IllegalOperationError(
                f"Cannot remove '{cell_type}': it is the parent of "
                f"{[c.cell_type for c in children]}. Remove the children first."
            )
        del self._classifiers[cell_type]
        return classifier
    
    def children(self, cell_type: str) -> List[CellTypeClassifier]:
        """Classifiers whose parent is ``cell_type``."""
        return [c for c in self._classifiers.values() if c.parent == cell_type]
    
    def roots(self) -> List[CellTypeClassifier]:
        """Classifiers without a parent."""
        return [c for c in self._classifiers.values() if c.parent is None]
    
    def ancestor_chain(self, classifier: Union[str, CellTypeClassifier]) -> List[CellTypeClassifier]:
        """
        Ancestors of a classifier, root first and immediate parent last.
        
        Raises
        ------
        BrokenLineageError
            If a parent is not registered or the lineage loops.
        """
        if isinstance(classifier, str):
            classifier = self[classifier]
        
        chain: List[CellTypeClassifier] = []
        seen = {classifier.cell_type}
        current = classifier
        while current.parent is not None:
            parent = self._classifiers.get(current.parent)
            if parent is None:
                raise BrokenLineageError(
                    f"Parent '{current.parent}' of '{current.cell_type}' is not in the registry"
                )
            if parent.cell_type in seen:
                raise BrokenLineageError(
                    f"Lineage of '{classifier.cell_type}' loops through '{parent.cell_type}'"
                )
            seen.add(parent.cell_type)
            chain.append(parent)
            current = parent
        
        chain.reverse()
        return chain
    
    def depth(self, classifier: Union[str, CellTypeClassifier]) -> int:
        """Number of ancestors of a classifier (0 for roots)."""
        return len(self.ancestor_chain(classifier))
    
    def resolve(self, cell_types: Union[str, Iterable[str]] = 'all') -> List[CellTypeClassifier]:
        """
        Classifiers needed to predict the requested cell types.
        
        Parameters
        ----------
        cell_types : str or iterable of str, default='all'
            Cell type names, a single name, or 'all'.
            
        Returns
        -------
        classifiers : list
            The requested classifiers and all their ancestors, in
            registration order.
            
        Raises
        ------
        UnknownCellTypeError
            If a requested cell type is not registered.
        BrokenLineageError
            If an ancestor of a requested cell type is not registered.
        """
        if isinstance(cell_types, str):
            if cell_types == 'all':
                requested = list(self._classifiers)
            else:
                requested = [cell_types]
        else:
            requested = list(cell_types)
        
        unknown = [name for name in requested if name not in self._classifiers]
        if unknown:
            raise UnknownCellTypeError(
                f"No classifier for cell types {unknown}. "
                f"Available: {list(self._classifiers)}"
            )
        
        needed = set(requested)
        for name in requested:
            needed.update(c.cell_type for c in self.ancestor_chain(name))
        
        return [c for name, c in self._classifiers.items() if name in needed]
    
    def tree(self) -> str:
        """Indented text view of the classifier hierarchy."""
        lines: List[str] = []
        
        def _walk(classifier: CellTypeClassifier, level: int) -> None:
            lines.append(f"{'    ' * level}- {classifier.cell_type}")
            for child in self.children(classifier.cell_type):
                _walk(child, level + 1)
        
        for root in self.roots():
            _walk(root, 0)
        
        orphans = [
            c for c in self._classifiers.values()
            if c.parent is not None and c.parent not in self._classifiers
        ]
        for orphan in orphans:
            lines.append(f"- {orphan.cell_type} (missing parent '{orphan.parent}')")
        
        return '\n'.join(lines)
    
    def save(self, path: Union[str, Path], compress: int = 3) -> Path:
        """
        Write the registry to disk with joblib.
        
        Returns
        -------
        path : Path
            Location of the written file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        
        payload = {
            'format_version': FORMAT_VERSION,
            'classifiers': {name: _record_to_dict(c) for name, c in self._classifiers.items()},
        }
        joblib.dump(payload, path, compress=compress)
        logger.info("Saved %d classifiers to %s", len(self), path)
        return path
    
    @classmethod
    def load(cls, source: Any) -> 'ClassifierRegistry':
        """
        Build a registry from a file or an in-memory collection.
        
        Parameters
        ----------
        source : str, Path, ClassifierRegistry, dict or iterable
            A path written by ``save``, another registry (copied), a mapping
            of cell type to CellTypeClassifier or to field dictionaries, or
            an iterable of CellTypeClassifier objects.
            
        Raises
        ------
        LoadError
            If the source is unreadable or any entry is invalid.
        """
        if isinstance(source, (str, Path)):
            return cls._load_file(Path(source))
        
        if isinstance(source, ClassifierRegistry):
            return cls(source.values())
        
        if isinstance(source, Mapping):
            return cls._from_mapping(source)
        
        try:
            entries = list(source)
        except TypeError:
            raise LoadError(f"Cannot load classifiers from {type(source)}") from None
        
        registry = cls()
        for entry in entries:
            if not isinstance(entry, CellTypeClassifier):
                raise LoadError(f"Expected CellTypeClassifier entries, got {type(entry)}")
            try:
                registry.add(entry)
            except IllegalOperationError as e:
                raise LoadError(str(e)) from e
        return registry
    
    @classmethod
    def _from_mapping(cls, mapping: Mapping) -> 'ClassifierRegistry':
        registry = cls()
        for name, entry in mapping.items():
            try:
                if isinstance(entry, Mapping):
                    entry = _record_from_dict(dict(entry))
                elif not isinstance(entry, CellTypeClassifier):
                    raise LoadError(f"Entry '{name}' is a {type(entry)}, not a classifier")
            except InvalidClassifierError as e:
                raise LoadError(f"Invalid classifier '{name}': {e}") from e
            
            if entry.cell_type != name:
                raise LoadError(
                    f"Entry '{name}' holds a classifier for '{entry.cell_type}'"
                )
            registry.add(entry)
        return registry
    
    @classmethod
    def _load_file(cls, path: Path) -> 'ClassifierRegistry':
        if not path.exists():
            raise LoadError(f"Classifier file not found: {path}")
        
        try:
            payload = joblib.load(path)
        except Exception as e:
            raise LoadError(f"Cannot read classifier file {path}: {e}") from e
        
        if not isinstance(payload, Mapping) or 'classifiers' not in payload:
            raise LoadError(f"{path} is not a classifier file")
        
        version = payload.get('format_version')
        if version != FORMAT_VERSION:
            raise LoadError(
                f"{path} has format version {version}, expected {FORMAT_VERSION}"
            )
        
        registry = cls._from_mapping(payload['classifiers'])
        logger.info("Loaded %d classifiers from %s", len(registry), path)
        return registry


def load_classifiers(source: Any) -> ClassifierRegistry:
    """Load a classifier registry; see ``ClassifierRegistry.load``."""
    return ClassifierRegistry.load(source)


def default_classifiers_path() -> Path:
    """Location of the bundled classifiers, honouring the environment override."""
    override = os.environ.get(DEFAULT_CLASSIFIERS_ENV)
    return Path(override) if override else DEFAULT_CLASSIFIERS_PATH


def load_default_classifiers() -> ClassifierRegistry:
    """
    Load the bundled default classifiers.
    
    Raises
    ------
    LoadError
        If the bundled classifier file is not installed.
    """
    path = default_classifiers_path()
    if not path.exists():
        raise LoadError(
            f"Default classifiers not found at {path}. Pass your own classifiers "
            f"or set {DEFAULT_CLASSIFIERS_ENV} to a file written by ClassifierRegistry.save()."
        )
    return ClassifierRegistry.load(path)
