"""Command-line interface for notevault."""


import argparse
import json
import logging
import sys
from typing import List
from terminaltables import AsciiTable
from notevault.api import Notevault
from notevault.errors import StoreError
from notevault.models import Note, NotePriority
from notevault.records import note_to_record, category_to_record, tag_to_record


def _print_notes(notes: List[Note], nv: Notevault, as_json: bool) -> None:
    if as_json:
        print(json.dumps([note_to_record(n) for n in notes]))
        return
    category_names = {c.id: c.name for c in nv.get_all_categories()}
    tag_names = {t.id: t.name for t in nv.get_all_tags()}
    data = [('Id', 'Title', 'Category', 'Tags', 'Priority', 'Updated')]
    for note in notes:
        title = note.display_title
        if note.is_favorite:
            title += ' *'
        if note.is_archived:
            title += ' [archived]'
        data.append((note.id,
                     title,
                     category_names.get(note.category_id, note.category_id),
                     '\n'.join(sorted(tag_names.get(t, t) for t in note.tag_ids)),
                     note.priority.value,
                     note.updated_at.strftime('%Y-%m-%d %H:%M')))
    print(AsciiTable(data).table)


def _stats(args, nv: Notevault) -> int:
    stats = nv.statistics()
    if args.json:
        print(json.dumps(stats.as_json()))
    else:
        data = [('Statistic', 'Value')] + [(k.replace('_', ' '), v) for k, v in stats.as_json().items()]
        table = AsciiTable(data)
        table.justify_columns[1] = 'right'
        print(table.table)
    return 0


def _notes(args, nv: Notevault) -> int:
    _print_notes(nv.get_filtered_notes(args.query or None), nv, args.json)
    return 0


def _search(args, nv: Notevault) -> int:
    _print_notes(nv.search_notes(args.text[0]), nv, args.json)
    return 0


def _categories(args, nv: Notevault) -> int:
    categories = nv.get_all_categories()
    if args.json:
        print(json.dumps([category_to_record(c) for c in categories]))
    else:
        data = [('Id', 'Name', 'Notes')] + [(c.id, c.name, c.note_count) for c in categories]
        table = AsciiTable(data)
        table.justify_columns[2] = 'right'
        print(table.table)
    return 0


def _tags(args, nv: Notevault) -> int:
    tags = nv.get_all_tags()
    if args.json:
        print(json.dumps([tag_to_record(t) for t in tags]))
    else:
        data = [('Id', 'Tag', 'Count')] + [(t.id, t.name, t.usage_count) for t in tags]
        table = AsciiTable(data)
        table.justify_columns[2] = 'right'
        print(table.table)
    return 0


def _new(args, nv: Notevault) -> int:
    category_id = None
    if args.category:
        name_or_id = args.category[0]
        category = nv.get_category(name_or_id) or nv.find_category(name_or_id)
        category_id = category.id if category else nv.new_category(name_or_id).id
    tag_names = [t.strip() for t in (args.tags or [''])[0].split(',') if t.strip()]
    note = nv.new_note(args.title[0],
                       args.body[0] if args.body else '',
                       category_id=category_id,
                       tag_names=tag_names,
                       priority=NotePriority(args.priority[0]) if args.priority else NotePriority.NORMAL)
    if args.json:
        print(json.dumps(note_to_record(note)))
    else:
        print(f'Created note {note.id}')
    return 0


def _export(args, nv: Notevault) -> int:
    snapshot = nv.export_to(args.path[0])
    print(f'Exported {len(snapshot["notes"])} notes, {len(snapshot["categories"])} categories, '
          f'and {len(snapshot["tags"])} tags to {args.path[0]}')
    return 0


def _import(args, nv: Notevault) -> int:
    nv.import_from(args.path[0])
    stats = nv.statistics()
    print(f'Imported {stats.total_notes} notes, {stats.total_categories} categories, and {stats.total_tags} tags')
    return 0


def _clear(args, nv: Notevault) -> int:
    if not args.yes:
        print('This deletes every note, category, and tag. Pass --yes to confirm.', file=sys.stderr)
        return 1
    nv.clear_all_data()
    return 0


def argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser()
    parser.set_defaults(func=None)
    parser.add_argument('-v', '--verbose', action='store_true', help='Log details of what is being done.')

    subs = parser.add_subparsers(title='Commands')

    p_stats = subs.add_parser('stats', help='Show counts of notes, categories, and tags, and other statistics.')
    p_stats.add_argument('-j', '--json', action='store_true', help='Output as JSON.')
    p_stats.set_defaults(func=_stats)

    p_notes = subs.add_parser(
        'notes',
        help='List notes, most recently updated first. For full query syntax, see the documentation of '
             'notevault.models.NoteQuery.parse - an example query is "tag:todo -archived priority:high,urgent".')
    p_notes.add_argument('query', nargs='?', help='Query string. If omitted, all notes are listed.')
    p_notes.add_argument('-j', '--json', action='store_true', help='Output as JSON.')
    p_notes.set_defaults(func=_notes)

    p_search = subs.add_parser('search', help='List notes whose title or content contains the text, ignoring case.')
    p_search.add_argument('text', nargs=1)
    p_search.add_argument('-j', '--json', action='store_true', help='Output as JSON.')
    p_search.set_defaults(func=_search)

    p_cats = subs.add_parser('categories', help='Show a list of categories and the number of notes in each.')
    p_cats.add_argument('-j', '--json', action='store_true', help='Output as JSON.')
    p_cats.set_defaults(func=_categories)

    p_tags = subs.add_parser('tags', help='Show a list of tags and the number of notes that have each tag.')
    p_tags.add_argument('-j', '--json', action='store_true', help='Output as JSON.')
    p_tags.set_defaults(func=_tags)

    p_new = subs.add_parser('new', help='Create a note. This command will print the id of the new note.')
    p_new.add_argument('title', nargs=1)
    p_new.add_argument('-b', '--body', nargs=1, help='Content of the note.')
    p_new.add_argument('-c', '--category', nargs=1,
                       help='Id or name of the category. A category with this name is created if none exists. '
                            'If omitted, the default category is used.')
    p_new.add_argument('-t', '--tags', nargs=1,
                       help='Comma-separated list of tag names. Tags that do not exist yet are created.')
    p_new.add_argument('-p', '--priority', nargs=1, choices=[p.value for p in NotePriority])
    p_new.add_argument('-j', '--json', action='store_true', help='Output the new note as JSON.')
    p_new.set_defaults(func=_new)

    p_export = subs.add_parser('export', help='Write all notes, categories, and tags to a JSON file.')
    p_export.add_argument('path', nargs=1)
    p_export.set_defaults(func=_export)

    p_import = subs.add_parser(
        'import',
        help='Replace all data with the contents of a JSON file written by the export command. '
             'The file is checked first; if it is invalid, nothing is changed.')
    p_import.add_argument('path', nargs=1)
    p_import.set_defaults(func=_import)

    p_clear = subs.add_parser('clear', help='Delete all notes, categories, and tags.')
    p_clear.add_argument('-y', '--yes', action='store_true', help='Confirm that you really want to do this.')
    p_clear.set_defaults(func=_clear)

    return parser


def main(args=None) -> int:
    """Runs the tool and returns its exit code.

    args may be an array of string command-line arguments; if absent,
    the process's arguments are used.
    """
    parser = argparser()
    args = parser.parse_args(args)
    if not args.func:
        parser.print_help()
        return 1
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')
    with Notevault.for_user() as nv:
        try:
            return args.func(args, nv)
        except (StoreError, ValueError, OSError) as e:
            print(f'Error: {e}', file=sys.stderr)
            return 2
