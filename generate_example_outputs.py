#!/usr/bin/env python3
import argparse
import os.path
import time

from PerceptronApparatus import (
    ApparatusError, Model, OutFormat, render_board_mode, save_image, write_cnc_files
)


def main():
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             default=None,
                             help='Which format to render (all by default)')
    example_models = sorted(Model.example_names())
    args_parser.add_argument('--model',
                             choices=example_models,
                             default=None,
                             help='Which board model (all by default)')
    args_parser.add_argument('--separate-layers',
                             action='store_true',
                             help='Also write one SVG per cut layer')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    out_formats = [next(f for f in OutFormat if f.value == cli_args.format)] if cli_args.format else OutFormat
    for model_name in ([cli_args.model] if cli_args.model else example_models):
        print(f'Building example outputs for: {model_name}')
        model = Model.load(model_name)

        for out_format in out_formats:
            try:
                start_time = time.process_time()
                board_filename = os.path.join(base_dir, f'{model_name}.Board')
                if out_format == OutFormat.SVG and cli_args.separate_layers:
                    write_cnc_files(model, base_dir, f'{model_name}.Board')
                else:
                    board_img = render_board_mode(model, out_format)
                    print(f' Render time: {round(time.process_time() - start_time, 3)}')
                    save_image(board_img, board_filename)
                print(f' Board output for: {model_name} at: {board_filename}')
                print(f'Time elapsed: {round(time.process_time() - start_time, 3)}')
            except ApparatusError as e:
                print(f'Error processing {model_name}: {e}; Skipping')


if __name__ == '__main__':
    main()
