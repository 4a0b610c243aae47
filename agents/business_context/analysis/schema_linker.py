"""
Schema Entity Linker

Attaches physical table/column names to extracted entities. Sources are
tried in order: the direct term mapping from the vocabulary, the business
glossary, then catalog table and column names.
"""

from typing import Dict, List, Optional, Sequence

from shared.base.services import BusinessMetadataService
from shared.config.logging_config import configure_logger_for_component
from shared.config.vocabulary import BusinessVocabulary, load_business_vocabulary
from shared.schemas.business_context import (
    BusinessContextProfile,
    ColumnInfo,
    Domain,
    Entity,
    GlossaryTerm,
    Intent,
    IntentType,
    TableInfo,
    clamp_score,
)
from shared.utils.metrics import get_metrics_collector

from .interfaces import EntityLinker

DIRECT_MAPPING_BOOST = 0.2
GLOSSARY_BOOST = 0.25
TABLE_MATCH_BOOST = 0.15
COLUMN_MATCH_BOOST = 0.2


def _bare_table_name(name: str) -> str:
    lowered = name.lower()
    return lowered[4:] if lowered.startswith("tbl_") else lowered


class SchemaEntityLinker(EntityLinker):
    """Links entities to the physical schema."""

    def __init__(
        self,
        metadata_service: Optional[BusinessMetadataService] = None,
        vocabulary: Optional[BusinessVocabulary] = None,
    ):
        self.logger = configure_logger_for_component("analysis.schema_linker")
        self.metadata_service = metadata_service
        self.vocabulary = vocabulary or load_business_vocabulary()
        self.mappings = {term.lower(): mapping for term, mapping in self.vocabulary.schema_mappings.items()}
        self.unmapped_counter = get_metrics_collector().counter("schema_linking_unmapped")

    async def link_entities(self, entities: Sequence[Entity], question: str) -> List[Entity]:
        glossary, tables, columns = await self._load_catalog(entities, question)

        linked = []
        for entity in entities:
            try:
                linked.append(self._link_entity(entity, glossary, tables, columns))
            except (KeyError, ValueError) as e:
                self.logger.warning(f"Could not link entity {entity.name}: {e}")
                linked.append(entity)
        return linked

    def _link_entity(
        self,
        entity: Entity,
        glossary: Dict[str, GlossaryTerm],
        tables: List[TableInfo],
        columns: List[ColumnInfo],
    ) -> Entity:
        for key in (entity.name.lower(), entity.original_text.lower()):
            mapping = self.mappings.get(key)
            if mapping is not None:
                metadata = {**entity.metadata, 'mapping_method': 'direct_business_term'}
                if mapping.value is not None:
                    metadata['mapped_value'] = mapping.value
                return entity.model_copy(update={
                    'mapped_table': mapping.table,
                    'mapped_column': mapping.column,
                    'confidence': clamp_score(entity.confidence + DIRECT_MAPPING_BOOST),
                    'metadata': metadata,
                })

        term = glossary.get(entity.name.lower())
        if term is not None and (term.mapped_tables or term.mapped_columns):
            return entity.model_copy(update={
                'mapped_table': term.mapped_tables[0] if term.mapped_tables else "",
                'mapped_column': term.mapped_columns[0] if term.mapped_columns else "",
                'confidence': clamp_score(entity.confidence + GLOSSARY_BOOST),
                'metadata': {
                    **entity.metadata,
                    'mapping_method': 'business_glossary_match',
                    'glossary_term': term.term,
                },
            })

        name = entity.name.lower()
        for table in tables:
            bare = _bare_table_name(table.table_name)
            if name == bare or name == table.table_name.lower() or (len(name) > 3 and name in bare):
                return entity.model_copy(update={
                    'mapped_table': table.table_name,
                    'confidence': clamp_score(entity.confidence + TABLE_MATCH_BOOST),
                    'metadata': {**entity.metadata, 'mapping_method': 'business_table_match'},
                })

        for column in columns:
            if name == column.column_name.lower():
                return entity.model_copy(update={
                    'mapped_table': column.table_name,
                    'mapped_column': column.column_name,
                    'confidence': clamp_score(entity.confidence + COLUMN_MATCH_BOOST),
                    'metadata': {**entity.metadata, 'mapping_method': 'business_column_match'},
                })

        self.unmapped_counter.increment()
        return entity.model_copy(update={
            'metadata': {**entity.metadata, 'link_status': 'unmapped', 'mapping_method': 'unmapped'},
        })

    async def _load_catalog(self, entities: Sequence[Entity], question: str):
        if self.metadata_service is None or not entities:
            return {}, [], []

        names = [e.name for e in entities]
        try:
            glossary_terms = await self.metadata_service.find_relevant_glossary_terms(names)
            provisional = BusinessContextProfile(
                question=question,
                intent=Intent(type=IntentType.ANALYTICAL, confidence=0.5),
                domain=Domain(name="General", relevance_score=0.5),
                entities=list(entities),
                business_terms=names,
                confidence=0.5,
                metadata={'provisional': True},
            )
            tables = await self.metadata_service.find_relevant_tables(provisional, top_k=10)
            columns = await self.metadata_service.find_relevant_columns(
                [t.table_name for t in tables], provisional
            )
        except Exception as e:
            self.logger.warning(f"Catalog lookup for schema linking failed: {e}")
            return {}, [], []

        glossary = {g.term.lower(): g for g in glossary_terms}
        return glossary, tables, columns
